"""Tests for weight calculation."""

from datetime import UTC, datetime, timedelta

import pytest
from touchtrail.attribution.calculator import (
    calculate,
    compute_weights,
    resolve_settings,
)
from touchtrail.attribution.exceptions import ContractViolation, ValidationError
from touchtrail.attribution.schema import (
    AttributionModel,
    CustomSettings,
    FirstTouchSettings,
    LastTouchSettings,
    LinearSettings,
    PositionBasedSettings,
    TimeDecaySettings,
    Touchpoint,
)

ALL_SETTINGS = [
    FirstTouchSettings(),
    LastTouchSettings(),
    LinearSettings(),
    TimeDecaySettings(),
    TimeDecaySettings(decay_base=0.1),
    PositionBasedSettings(),
    PositionBasedSettings(first_touch_weight=0.3, last_touch_weight=0.3, middle_touch_weight=0.4),
    PositionBasedSettings(first_touch_weight=0.4, last_touch_weight=0.4, middle_touch_weight=0.2005),
    CustomSettings(custom_weights={"google": 0.6, "facebook": 0.3}),
    CustomSettings(custom_weights={"tiktok": 1.0}),
]

SOURCES = ["google", "facebook", "direct", "google", "email"]


class TestSumToOne:
    """Weights sum to 1 for every model and touchpoint count."""

    @pytest.mark.parametrize("settings", ALL_SETTINGS, ids=lambda s: repr(s))
    @pytest.mark.parametrize("count", [1, 2, 3, 5])
    def test_weights_sum_to_one(self, make_touchpoints, settings, count):
        """Test normalized weights for N >= 1."""
        touchpoints = make_touchpoints(*range(count - 1, -1, -1), sources=SOURCES[:count])

        weights = compute_weights(touchpoints, settings)

        assert weights
        assert sum(weights.values()) == pytest.approx(1.0, rel=1e-9)
        assert all(0 < w <= 1 for w in weights.values())

    @pytest.mark.parametrize("settings", ALL_SETTINGS, ids=lambda s: repr(s))
    def test_empty_sequence_returns_empty_mapping(self, settings):
        """Test N = 0 yields no weights."""
        assert compute_weights([], settings) == {}


class TestSingleTouchModels:
    """Test first-touch and last-touch."""

    @pytest.mark.parametrize("count", [1, 2, 3, 7])
    def test_first_touch(self, make_touchpoints, count):
        """Test all credit goes to the first touchpoint regardless of N."""
        touchpoints = make_touchpoints(*range(count, 0, -1))

        weights = compute_weights(touchpoints, FirstTouchSettings())

        assert weights == {touchpoints[0].id: 1.0}

    @pytest.mark.parametrize("count", [1, 2, 3, 7])
    def test_last_touch(self, make_touchpoints, count):
        """Test all credit goes to the last touchpoint regardless of N."""
        touchpoints = make_touchpoints(*range(count, 0, -1))

        weights = compute_weights(touchpoints, LastTouchSettings())

        assert weights == {touchpoints[-1].id: 1.0}

    def test_zero_weights_are_omitted(self, make_touchpoints):
        """Test untouched touchpoints are not in the mapping."""
        touchpoints = make_touchpoints(3, 2, 1)

        weights = compute_weights(touchpoints, FirstTouchSettings())

        assert "tp-1" not in weights
        assert "tp-2" not in weights


class TestLinear:
    """Test linear attribution."""

    def test_four_touchpoints_get_a_quarter_each(self, make_touchpoints):
        """Test N=4 gives 0.25 each."""
        touchpoints = make_touchpoints(3, 2, 1, 0)

        weights = compute_weights(touchpoints, LinearSettings())

        assert weights == {tp.id: pytest.approx(0.25) for tp in touchpoints}

    def test_three_touchpoints(self, make_touchpoints):
        """Test N=3 gives a third each."""
        touchpoints = make_touchpoints(2, 1, 0)

        weights = compute_weights(touchpoints, LinearSettings())

        for tp in touchpoints:
            assert weights[tp.id] == pytest.approx(1 / 3, rel=1e-12)


class TestTimeDecay:
    """Test time-decay attribution."""

    def test_half_decay_over_whole_days(self, make_touchpoints):
        """Test raw weights [0.25, 0.5, 1.0] normalize to [1/7, 2/7, 4/7]."""
        touchpoints = make_touchpoints(2, 1, 0)

        weights = compute_weights(touchpoints, TimeDecaySettings(decay_base=0.5))

        assert weights["tp-0"] == pytest.approx(0.1429, abs=1e-4)
        assert weights["tp-1"] == pytest.approx(0.2857, abs=1e-4)
        assert weights["tp-2"] == pytest.approx(0.5714, abs=1e-4)
        assert weights["tp-0"] == pytest.approx(1 / 7, rel=1e-12)

    def test_fractional_days_count(self, make_touchpoints):
        """Test a touchpoint half a day earlier gets decay_base ** 0.5."""
        touchpoints = make_touchpoints(0.5, 0)

        weights = compute_weights(touchpoints, TimeDecaySettings(decay_base=0.25))

        # raw weights 0.5 and 1.0
        assert weights["tp-0"] == pytest.approx(1 / 3, rel=1e-12)
        assert weights["tp-1"] == pytest.approx(2 / 3, rel=1e-12)

    def test_decay_measured_from_last_touchpoint(self):
        """Test days are counted back from the last touchpoint, not the conversion."""
        last = datetime(2025, 1, 10, tzinfo=UTC)
        touchpoints = [
            Touchpoint(id="a", timestamp=last - timedelta(days=1)),
            Touchpoint(id="b", timestamp=last),
        ]

        weights = compute_weights(touchpoints, TimeDecaySettings(decay_base=0.5))

        assert weights["a"] == pytest.approx(1 / 3)
        assert weights["b"] == pytest.approx(2 / 3)

    def test_same_timestamp_degenerates_to_linear(self, make_touchpoints):
        """Test identical timestamps give equal weights."""
        touchpoints = make_touchpoints(1, 1, 1)

        weights = compute_weights(touchpoints, TimeDecaySettings(decay_base=0.5))

        assert weights == pytest.approx(compute_weights(touchpoints, LinearSettings()))

    def test_default_decay_base(self, make_touchpoints):
        """Test decay_base defaults to 0.7."""
        touchpoints = make_touchpoints(1, 0)

        weights = compute_weights(touchpoints, TimeDecaySettings())

        assert weights["tp-0"] == pytest.approx(0.7 / 1.7)
        assert weights["tp-1"] == pytest.approx(1 / 1.7)


class TestPositionBased:
    """Test position-based attribution."""

    def test_three_touchpoints(self, make_touchpoints):
        """Test 40/20/40 with three touchpoints."""
        touchpoints = make_touchpoints(2, 1, 0)

        weights = compute_weights(touchpoints, PositionBasedSettings())

        assert [weights[tp.id] for tp in touchpoints] == pytest.approx([0.4, 0.2, 0.4])

    def test_interior_splits_middle_weight(self, make_touchpoints):
        """Test middle weight is shared evenly across interior touchpoints."""
        touchpoints = make_touchpoints(4, 3, 2, 1, 0)

        weights = compute_weights(touchpoints, PositionBasedSettings())

        assert [weights[tp.id] for tp in touchpoints] == pytest.approx(
            [0.4, 0.2 / 3, 0.2 / 3, 0.2 / 3, 0.4]
        )

    def test_single_touchpoint_gets_full_credit(self, make_touchpoints):
        """Test N=1 collapses first, middle and last onto one touchpoint."""
        touchpoints = make_touchpoints(0)

        weights = compute_weights(touchpoints, PositionBasedSettings())

        assert weights == {"tp-0": 1.0}

    def test_two_touchpoints_redistribute_middle_proportionally(self, make_touchpoints):
        """Test N=2 gives middle weight to first and last in proportion."""
        touchpoints = make_touchpoints(1, 0)
        settings = PositionBasedSettings(
            first_touch_weight=0.6, last_touch_weight=0.2, middle_touch_weight=0.2
        )

        weights = compute_weights(touchpoints, settings)

        assert weights["tp-0"] == pytest.approx(0.75)
        assert weights["tp-1"] == pytest.approx(0.25)

    def test_two_touchpoints_with_default_weights_split_evenly(self, make_touchpoints):
        """Test 40/20/40 becomes 50/50 for N=2."""
        touchpoints = make_touchpoints(1, 0)

        weights = compute_weights(touchpoints, PositionBasedSettings())

        assert weights == {"tp-0": pytest.approx(0.5), "tp-1": pytest.approx(0.5)}

    def test_two_touchpoints_with_all_weight_in_middle(self, make_touchpoints):
        """Test first=last=0 splits evenly when there is no interior."""
        touchpoints = make_touchpoints(1, 0)
        settings = PositionBasedSettings(
            first_touch_weight=0.0, last_touch_weight=0.0, middle_touch_weight=1.0
        )

        weights = compute_weights(touchpoints, settings)

        assert weights == {"tp-0": 0.5, "tp-1": 0.5}

    def test_weights_within_tolerance_are_renormalized(self, make_touchpoints):
        """Test configured weights summing to 1.0005 still yield a sum of 1."""
        touchpoints = make_touchpoints(2, 1, 0)
        settings = PositionBasedSettings(
            first_touch_weight=0.4, last_touch_weight=0.4, middle_touch_weight=0.2005
        )

        weights = compute_weights(touchpoints, settings)

        assert sum(weights.values()) == pytest.approx(1.0, rel=1e-12)
        assert weights["tp-0"] == pytest.approx(0.4 / 1.0005)


class TestCustom:
    """Test custom channel-weight attribution."""

    def test_weights_follow_channel_weights(self, make_touchpoints):
        """Test touchpoints are credited in proportion to their channel weight."""
        touchpoints = make_touchpoints(2, 1, 0, sources=["google", "facebook", "google"])
        settings = CustomSettings(custom_weights={"google": 0.5, "facebook": 0.25})

        weights = compute_weights(touchpoints, settings)

        assert weights["tp-0"] == pytest.approx(0.4)
        assert weights["tp-1"] == pytest.approx(0.2)
        assert weights["tp-2"] == pytest.approx(0.4)

    def test_unmapped_sources_are_excluded(self, make_touchpoints):
        """Test sources missing from custom_weights get nothing."""
        touchpoints = make_touchpoints(2, 1, 0, sources=["google", "email", "direct"])
        settings = CustomSettings(custom_weights={"google": 0.3})

        weights = compute_weights(touchpoints, settings)

        assert weights == {"tp-0": pytest.approx(1.0)}

    def test_no_mapped_sources_falls_back_to_last_touch(self, make_touchpoints):
        """Test an empty result falls back to last-touch."""
        touchpoints = make_touchpoints(2, 1, 0, sources=["email", "direct", "bing"])
        settings = CustomSettings(custom_weights={"google": 0.3})

        weights = compute_weights(touchpoints, settings)

        assert weights == {"tp-2": 1.0}

    def test_zero_weight_channels_fall_back_to_last_touch(self, make_touchpoints):
        """Test channels mapped to 0 count as unmapped."""
        touchpoints = make_touchpoints(1, 0, sources=["google", "facebook"])
        settings = CustomSettings(custom_weights={"google": 0.0, "facebook": 0.0})

        weights = compute_weights(touchpoints, settings)

        assert weights == {"tp-1": 1.0}


class TestContract:
    """Test input the calculator must reject."""

    def test_unsorted_touchpoints_rejected(self, make_touchpoints):
        """Test descending timestamps raise ContractViolation."""
        touchpoints = make_touchpoints(0, 1)

        with pytest.raises(ContractViolation, match="sorted"):
            compute_weights(touchpoints, LinearSettings())

    def test_naive_timestamp_rejected(self):
        """Test naive timestamps raise ContractViolation."""
        touchpoints = [Touchpoint(id="a", timestamp=datetime(2025, 1, 1))]

        with pytest.raises(ContractViolation, match="timezone-aware"):
            compute_weights(touchpoints, LastTouchSettings())

    def test_nan_decay_base_rejected(self, make_touchpoints):
        """Test NaN decay_base never produces NaN weights."""
        touchpoints = make_touchpoints(1, 0)

        with pytest.raises(ContractViolation):
            compute_weights(touchpoints, TimeDecaySettings(decay_base=float("nan")))

    def test_duplicate_ids_accumulate(self):
        """Test touchpoints sharing an id share one entry."""
        ts = datetime(2025, 1, 1, tzinfo=UTC)
        touchpoints = [
            Touchpoint(id="same", timestamp=ts),
            Touchpoint(id="same", timestamp=ts + timedelta(hours=1)),
            Touchpoint(id="other", timestamp=ts + timedelta(hours=2)),
        ]

        weights = compute_weights(touchpoints, LinearSettings())

        assert weights["same"] == pytest.approx(2 / 3)
        assert sum(weights.values()) == pytest.approx(1.0)


class TestIdempotence:
    """Test compute_weights is pure."""

    @pytest.mark.parametrize("settings", ALL_SETTINGS, ids=lambda s: repr(s))
    def test_repeated_calls_return_identical_output(self, make_touchpoints, settings):
        """Test identical input yields identical output."""
        touchpoints = make_touchpoints(4, 2.5, 1, 0, sources=SOURCES[:4])

        first = compute_weights(touchpoints, settings)
        second = compute_weights(touchpoints, settings)

        assert first == second


class TestCalculate:
    """Test the name-based entry point."""

    def test_resolves_model_and_defaults(self, make_touchpoints):
        """Test settings are filled with model defaults."""
        touchpoints = make_touchpoints(2, 1, 0)

        calculation = calculate(touchpoints, "position_based", {"lookback_window_days": 14})

        assert calculation.model == AttributionModel.POSITION_BASED
        assert calculation.settings.lookback_window_days == 14
        assert calculation.settings.middle_touch_weight == 0.2
        assert calculation.fell_back is False
        assert calculation.touchpoint_count == 3

    def test_unknown_model_falls_back_to_last_touch(self, make_touchpoints):
        """Test an unknown model name uses last-touch and records the fallback."""
        touchpoints = make_touchpoints(2, 1, 0)

        calculation = calculate(touchpoints, "data_driven", {"lookback_window_days": 7})

        assert calculation.weights == {"tp-2": 1.0}
        assert calculation.model == AttributionModel.LAST_TOUCH
        assert calculation.requested_model == "data_driven"
        assert calculation.fallback_reason == "unknown_model"
        assert calculation.fell_back is True
        assert calculation.settings.lookback_window_days == 7

    def test_typed_settings_used_as_is(self, make_touchpoints):
        """Test typed settings for the named model are not rebuilt."""
        touchpoints = make_touchpoints(1, 0)
        settings = TimeDecaySettings(decay_base=0.5)

        calculation = calculate(touchpoints, AttributionModel.TIME_DECAY, settings)

        assert calculation.settings is settings

    def test_invalid_stored_settings_raise(self, make_touchpoints):
        """Test out-of-range settings are reported, not silently used."""
        with pytest.raises(ValidationError):
            calculate(make_touchpoints(0), "time_decay", {"decay_base": 5})


class TestResolveSettings:
    """Test settings resolution."""

    def test_default_lookback_applies_when_missing(self):
        """Test the supplied default lookback fills a missing value."""
        settings, reason = resolve_settings("linear", {}, default_lookback_days=45)

        assert isinstance(settings, LinearSettings)
        assert settings.lookback_window_days == 45
        assert reason is None

    def test_unknown_model_keeps_stored_lookback(self):
        """Test fallback keeps the lookback window of the stored config."""
        settings, reason = resolve_settings("mystery", {"lookback_window_days": 10})

        assert isinstance(settings, LastTouchSettings)
        assert settings.lookback_window_days == 10
        assert reason == "unknown_model"

    def test_unknown_model_rejects_out_of_range_lookback(self):
        """Test fallback still validates the stored lookback window."""
        with pytest.raises(ValidationError):
            resolve_settings("markov", {"lookback_window_days": 500})

    def test_unknown_model_rejects_non_integer_lookback(self):
        """Test fallback rejects a lookback stored as text."""
        with pytest.raises(ValidationError):
            resolve_settings("markov", {"lookback_window_days": "30"})

    def test_unknown_model_ignores_foreign_settings(self):
        """Test fallback drops settings that belong to other models."""
        settings, reason = resolve_settings("markov", {"lookback_window_days": 7, "decay_base": 0.3})

        assert settings == LastTouchSettings(lookback_window_days=7)
        assert reason == "unknown_model"
