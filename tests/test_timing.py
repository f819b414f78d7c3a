"""Tests for block time estimation, ETA formatting and milestones."""

import pytest
from datetime import datetime, timedelta, timezone

from upgrade_sentinel.chain import ChainHeightSample
from upgrade_sentinel.timing import BlockTimeEstimator, MilestoneSet, eta_seconds, format_eta

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def sample(height, seconds):
    return ChainHeightSample(height, T0 + timedelta(seconds=seconds))


class TestBlockTimeEstimator:

    @pytest.mark.parametrize("old,new,expected", [
        (sample(100, 0), sample(110, 60), 6.0),
        (sample(1, 0), sample(2, 0.4), 0.4),
        (sample(5000, 10), sample(5100, 85), 0.75),
    ])
    def test_update_computes_rate(self, old, new, expected):
        estimator = BlockTimeEstimator(6.0)

        result = estimator.update(old, new)

        assert result == pytest.approx(expected)
        assert result > 0
        assert estimator.seconds_per_block == pytest.approx(expected)

    def test_equal_height_is_noop(self):
        estimator = BlockTimeEstimator(5.0)

        assert estimator.update(sample(100, 0), sample(100, 30)) == 5.0
        assert estimator.seconds_per_block == 5.0

    def test_non_positive_estimate_discarded(self):
        estimator = BlockTimeEstimator(5.0)

        # Clock went backwards
        assert estimator.update(sample(100, 30), sample(110, 0)) == 5.0
        # No time elapsed
        assert estimator.update(sample(100, 0), sample(110, 0)) == 5.0
        assert estimator.seconds_per_block == 5.0

    def test_height_regression_ignored(self):
        estimator = BlockTimeEstimator(5.0)

        assert estimator.update(sample(110, 0), sample(100, 60)) == 5.0

    def test_invalid_default(self):
        with pytest.raises(ValueError):
            BlockTimeEstimator(0)


class TestEta:

    def test_eta_seconds(self):
        assert eta_seconds(100, 6.0) == 600
        assert eta_seconds(3, 0.5) == 2
        assert eta_seconds(-5, 6.0) == 0

    @pytest.mark.parametrize("seconds,expected", [
        (0, "00m 00s"),
        (59, "00m 59s"),
        (61, "01m 01s"),
        (3661, "01h 01m 01s"),
        (86399, "23h 59m 59s"),
        (90000, "1d 01h 00m"),
        (-10, "00m 00s"),
    ])
    def test_format_eta(self, seconds, expected):
        assert format_eta(seconds) == expected

    def test_format_eta_days_component(self):
        assert "d" in format_eta(90000)


class TestMilestoneSet:

    def test_fires_once_in_ascending_order(self):
        milestones = MilestoneSet([75, 90, 95, 99])
        target = 1000
        fired = []

        for height in [500, 700, 750, 760, 900, 940, 950, 960, 990, 995, 999]:
            milestone = milestones.evaluate(height / target * 100)
            if milestone is not None:
                fired.append(milestone)

        assert fired == [75, 90, 95, 99]

    def test_no_refire_after_regression(self):
        milestones = MilestoneSet([75, 90])

        assert milestones.evaluate(76) == 75
        assert milestones.evaluate(70) is None
        assert milestones.evaluate(76) is None

    def test_one_per_call_highest_first(self):
        milestones = MilestoneSet([75, 90, 95])

        assert milestones.evaluate(96) == 95
        assert milestones.evaluate(96) == 90
        assert milestones.evaluate(96) == 75
        assert milestones.evaluate(96) is None

    def test_reset(self):
        milestones = MilestoneSet([75])
        milestones.evaluate(80)

        milestones.reset()

        assert milestones.fired == {75: False}
        assert milestones.evaluate(80) == 75
