"""
Attribution calculator - split one conversion's credit across touchpoints.

Supports multiple attribution models:
- First-touch: Credit to first touchpoint
- Last-touch (default): Credit to last touchpoint
- Linear: Equal credit to all touchpoints
- Time-decay: decay_base ** days before the last touchpoint, normalized
- Position-based: Fixed first/last shares, middle share split across the interior
- Custom: Per-channel weights, normalized over the touchpoints present

Weights are returned as a mapping of touchpoint id to weight. Touchpoints with
zero weight are omitted. For any non-empty input the weights sum to 1.0.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from touchtrail.attribution.exceptions import ContractViolation, UnknownModel
from touchtrail.attribution.registry import ModelRegistry, get_registry
from touchtrail.attribution.schema import (
    AttributionModel,
    CustomSettings,
    FirstTouchSettings,
    LastTouchSettings,
    LinearSettings,
    ModelSettings,
    PositionBasedSettings,
    TimeDecaySettings,
    Touchpoint,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400.0

FALLBACK_UNKNOWN_MODEL = "unknown_model"


@dataclass
class WeightCalculation:
    """Weights computed for one touchpoint sequence."""

    weights: dict[str, float]
    model: AttributionModel
    settings: ModelSettings
    requested_model: str | None = None
    fallback_reason: str | None = None
    touchpoint_count: int = 0

    @property
    def fell_back(self) -> bool:
        """Return True if a different model than requested was applied."""
        return self.fallback_reason is not None


def compute_weights(
    touchpoints: Sequence[Touchpoint],
    settings: ModelSettings,
) -> dict[str, float]:
    """
    Compute normalized weights for an ordered touchpoint sequence.

    Args:
        touchpoints: Touchpoints sorted by timestamp ascending
        settings: Validated settings; the settings type selects the model

    Returns:
        Mapping of touchpoint id to weight; empty for an empty sequence

    Raises:
        ContractViolation: If touchpoints are unordered or carry invalid timestamps
    """
    if not touchpoints:
        return {}

    _check_touchpoints(touchpoints)

    if isinstance(settings, FirstTouchSettings):
        raw = _first_touch(touchpoints)
    elif isinstance(settings, LastTouchSettings):
        raw = _last_touch(touchpoints)
    elif isinstance(settings, LinearSettings):
        raw = _linear(touchpoints)
    elif isinstance(settings, TimeDecaySettings):
        raw = _time_decay(touchpoints, settings)
    elif isinstance(settings, PositionBasedSettings):
        raw = _position_based(touchpoints, settings)
    elif isinstance(settings, CustomSettings):
        raw = _custom(touchpoints, settings)
    else:
        raw = _last_touch(touchpoints)

    return _collect(touchpoints, raw)


def calculate(
    touchpoints: Sequence[Touchpoint],
    model_name: str | AttributionModel,
    settings: dict[str, Any] | ModelSettings | None = None,
    registry: ModelRegistry | None = None,
) -> WeightCalculation:
    """
    Compute weights for a model given by name.

    Unknown model names fall back to last-touch; the fallback is recorded on
    the returned WeightCalculation rather than raised.

    Args:
        touchpoints: Touchpoints sorted by timestamp ascending
        model_name: Model name, e.g. "position_based"
        settings: Typed settings, or a raw mapping filled with model defaults
        registry: Registry to resolve names against (default: global registry)

    Returns:
        WeightCalculation with weights and the model actually applied
    """
    typed, fallback_reason = resolve_settings(model_name, settings, registry)

    requested = model_name.value if isinstance(model_name, AttributionModel) else str(model_name)
    return WeightCalculation(
        weights=compute_weights(touchpoints, typed),
        model=typed.model,
        settings=typed,
        requested_model=requested,
        fallback_reason=fallback_reason,
        touchpoint_count=len(touchpoints),
    )


def resolve_settings(
    model_name: str | AttributionModel,
    settings: dict[str, Any] | ModelSettings | None = None,
    registry: ModelRegistry | None = None,
    default_lookback_days: int = 30,
) -> tuple[ModelSettings, str | None]:
    """
    Turn a model name and stored settings into typed settings.

    Missing optional fields take the model defaults. An unknown model name
    resolves to last-touch settings with the stored lookback window, which is
    still range checked.

    Returns:
        (settings, fallback_reason) where fallback_reason is None unless the
        unknown-model fallback applied

    Raises:
        ValidationError: If the stored settings are out of range
    """
    registry = registry or get_registry()
    raw_settings = settings.to_dict() if hasattr(settings, "to_dict") else dict(settings or {})
    raw_settings.setdefault("lookback_window_days", default_lookback_days)

    try:
        spec = registry.resolve(model_name)
    except UnknownModel:
        logger.warning(f"Unknown attribution model {model_name!r}, falling back to last_touch")
        return registry.build(AttributionModel.LAST_TOUCH, raw_settings), FALLBACK_UNKNOWN_MODEL

    if isinstance(settings, spec.settings_class):
        return settings, None
    return registry.build(spec.model, raw_settings), None


def _check_touchpoints(touchpoints: Sequence[Touchpoint]) -> None:
    """Reject sequences that would yield NaN or misordered weights."""
    previous: datetime | None = None
    for tp in touchpoints:
        if not isinstance(tp.timestamp, datetime) or tp.timestamp.tzinfo is None:
            raise ContractViolation(
                f"Touchpoint {tp.id} needs a timezone-aware timestamp, got {tp.timestamp!r}"
            )
        if previous is not None and tp.timestamp < previous:
            raise ContractViolation(
                f"Touchpoints must be sorted by timestamp ascending (touchpoint {tp.id})"
            )
        previous = tp.timestamp


def _collect(touchpoints: Sequence[Touchpoint], raw: list[float]) -> dict[str, float]:
    """Normalize raw per-position weights and key them by touchpoint id."""
    total = math.fsum(raw)
    if not math.isfinite(total) or total <= 0:
        raise ContractViolation(f"Cannot normalize weights summing to {total}")

    weights: dict[str, float] = {}
    for tp, value in zip(touchpoints, raw):
        if value > 0:
            weights[tp.id] = weights.get(tp.id, 0.0) + value / total
    return weights


def _first_touch(touchpoints: Sequence[Touchpoint]) -> list[float]:
    """All credit to the first touchpoint."""
    raw = [0.0] * len(touchpoints)
    raw[0] = 1.0
    return raw


def _last_touch(touchpoints: Sequence[Touchpoint]) -> list[float]:
    """All credit to the last touchpoint."""
    raw = [0.0] * len(touchpoints)
    raw[-1] = 1.0
    return raw


def _linear(touchpoints: Sequence[Touchpoint]) -> list[float]:
    """Distribute credit equally across all touchpoints."""
    return [1.0 / len(touchpoints)] * len(touchpoints)


def _time_decay(
    touchpoints: Sequence[Touchpoint],
    settings: TimeDecaySettings,
) -> list[float]:
    """
    More credit to recent touchpoints.

    Raw weight is decay_base ** days_before, with fractional days measured
    back from the last touchpoint, so the last touchpoint always gets 1.
    """
    decay_base = settings.decay_base if settings.decay_base is not None else 0.7
    if not math.isfinite(decay_base) or decay_base <= 0:
        raise ContractViolation(f"decay_base must be a positive number, got {decay_base}")

    last = touchpoints[-1].timestamp
    raw = []
    for tp in touchpoints:
        days_before = (last - tp.timestamp).total_seconds() / SECONDS_PER_DAY
        raw.append(math.pow(decay_base, days_before))
    return raw


def _position_based(
    touchpoints: Sequence[Touchpoint],
    settings: PositionBasedSettings,
) -> list[float]:
    """
    First and last touchpoints get fixed shares, the interior splits the middle share.

    A single touchpoint takes all the credit. With two touchpoints there is no
    interior, so the middle share goes to first and last in proportion to
    their own shares (evenly if both are 0).
    """
    first = settings.first_touch_weight or 0.0
    last = settings.last_touch_weight or 0.0
    middle = settings.middle_touch_weight or 0.0
    count = len(touchpoints)

    if count == 1:
        return [1.0]

    if count == 2:
        if first + last <= 0:
            return [0.5, 0.5]
        return [first / (first + last), last / (first + last)]

    interior = middle / (count - 2)
    raw = [first] + [interior] * (count - 2) + [last]
    if math.fsum(raw) <= 0:
        return _linear(touchpoints)
    return raw


def _custom(
    touchpoints: Sequence[Touchpoint],
    settings: CustomSettings,
) -> list[float]:
    """
    Credit proportional to each touchpoint's channel weight.

    Touchpoints whose source has no positive weight get nothing. If that
    leaves nothing to credit, falls back to last-touch.
    """
    channel_weights = settings.custom_weights or {}
    raw = [max(float(channel_weights.get(tp.source, 0.0)), 0.0) for tp in touchpoints]

    if not any(math.isfinite(value) and value > 0 for value in raw):
        logger.info("No touchpoint matched a weighted channel, using last_touch")
        return _last_touch(touchpoints)
    if not all(math.isfinite(value) for value in raw):
        raise ContractViolation("custom_weights must be finite numbers")
    return raw
