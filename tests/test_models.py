"""Tests for stackup data models."""

import math

import pytest

from tolstack.features import Feature
from tolstack.models import (
    Contributor,
    Direction,
    Distribution,
    GdtContribution,
    InvalidStackupError,
    Stackup,
    Target,
)


def _target() -> Target:
    return Target(name="Gap", nominal=1.0, upper_limit=1.5, lower_limit=0.5)


class TestContributor:
    def test_defaults(self):
        c = Contributor(name="A", nominal=10.0, plus_tol=0.1, minus_tol=0.1)
        assert c.direction == Direction.POSITIVE
        assert c.distribution == Distribution.NORMAL
        assert c.sign == 1

    def test_negative_sign(self):
        c = Contributor(name="B", nominal=3.0, plus_tol=0.05, minus_tol=0.05,
                        direction=Direction.NEGATIVE)
        assert c.sign == -1
        assert c.signed_nominal == pytest.approx(-3.0)

    def test_negative_plus_tol_rejected(self):
        with pytest.raises(ValueError, match="plus_tol"):
            Contributor(name="A", nominal=1.0, plus_tol=-0.1, minus_tol=0.1)

    def test_negative_minus_tol_rejected(self):
        with pytest.raises(ValueError, match="minus_tol"):
            Contributor(name="A", nominal=1.0, plus_tol=0.1, minus_tol=-0.1)

    def test_asymmetric_mean_offset(self):
        c = Contributor(name="A", nominal=10.0, plus_tol=0.2, minus_tol=0.1)
        assert c.tolerance_band == pytest.approx(0.3)
        assert c.mean_offset == pytest.approx(0.05)
        assert c.process_mean == pytest.approx(10.05)

    def test_gdt_widens_band(self):
        c = Contributor(name="A", nominal=10.0, plus_tol=0.1, minus_tol=0.1,
                        gdt_position=GdtContribution(position_tolerance=0.05))
        assert c.band(include_gdt=False) == pytest.approx(0.2)
        assert c.band(include_gdt=True) == pytest.approx(0.25)

    def test_sync_from_feature(self):
        feat = Feature(title="Bore")
        feat.add_dimension("diameter", 12.0, 0.02, 0.01)
        c = Contributor(name="Bore", nominal=11.0, plus_tol=0.1, minus_tol=0.1)
        assert c.is_out_of_sync(feat)
        assert c.sync_from_feature(feat) is True
        assert c.nominal == 12.0
        assert c.plus_tol == 0.02
        assert c.minus_tol == 0.01
        assert not c.is_out_of_sync(feat)
        assert c.sync_from_feature(feat) is False

    def test_sync_without_dimension_is_noop(self):
        c = Contributor(name="A", nominal=1.0, plus_tol=0.1, minus_tol=0.1)
        assert c.sync_from_feature(Feature(title="Empty")) is False
        assert c.nominal == 1.0


class TestGdtContribution:
    def test_effective_without_bonus(self):
        g = GdtContribution(position_tolerance=0.1)
        assert g.effective == pytest.approx(0.1)

    def test_with_bonus(self):
        g = GdtContribution.with_bonus(0.1, actual_size=10.05, mmc=10.0)
        assert g.bonus == pytest.approx(0.05)
        assert g.effective == pytest.approx(0.15)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            GdtContribution(position_tolerance=-0.1)


class TestTarget:
    def test_band(self):
        assert _target().band == pytest.approx(1.0)

    def test_inverted_limits_rejected(self):
        with pytest.raises(ValueError):
            Target(name="Bad", nominal=0.0, upper_limit=-1.0, lower_limit=1.0)


class TestStackup:
    def test_defaults(self):
        s = Stackup(title="S", target=_target())
        assert s.sigma_level == 6.0
        assert s.mean_shift_k == 0.0
        assert s.include_gdt is False
        assert s.functional_direction == (1.0, 0.0, 0.0)
        assert s.id.startswith("TOL-")
        assert not s.has_analysis

    def test_direction_normalized(self):
        s = Stackup(title="S", target=_target(), functional_direction=(3.0, 4.0, 0.0))
        assert s.functional_direction == pytest.approx((0.6, 0.8, 0.0))
        assert math.hypot(*s.functional_direction) == pytest.approx(1.0)

    def test_zero_direction_rejected(self):
        with pytest.raises(ValueError):
            Stackup(title="S", target=_target(), functional_direction=(0.0, 0.0, 0.0))

    def test_revision_tracks_structural_edits(self):
        s = Stackup(title="S", target=_target())
        assert s.revision == 1
        s.add(Contributor(name="A", nominal=1.0, plus_tol=0.1, minus_tol=0.1))
        s.add(Contributor(name="B", nominal=2.0, plus_tol=0.1, minus_tol=0.1))
        assert s.revision == 3
        removed = s.remove("A")
        assert removed.name == "A"
        assert s.revision == 4
        assert [c.name for c in s.contributors] == ["B"]

    def test_remove_unknown(self):
        s = Stackup(title="S", target=_target())
        with pytest.raises(KeyError):
            s.remove("missing")

    def test_validate_empty(self):
        s = Stackup(title="S", target=_target())
        with pytest.raises(InvalidStackupError, match="no contributors"):
            s.validate()

    def test_validate_sigma_level(self):
        s = Stackup(title="S", target=_target(), sigma_level=0.0)
        s.add(Contributor(name="A", nominal=1.0, plus_tol=0.1, minus_tol=0.1))
        with pytest.raises(InvalidStackupError, match="Sigma level"):
            s.validate()

    def test_validate_mean_shift(self):
        s = Stackup(title="S", target=_target())
        s.add(Contributor(name="A", nominal=1.0, plus_tol=0.1, minus_tol=0.1))
        with pytest.raises(InvalidStackupError, match="k-factor"):
            s.validate(mean_shift_k=-0.5)

    def test_invalid_stackup_is_value_error(self):
        assert issubclass(InvalidStackupError, ValueError)
