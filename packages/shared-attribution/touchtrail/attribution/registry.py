"""Model registry mapping model names to settings schemas and validators."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, fields
from numbers import Real
from typing import Any

from touchtrail.attribution.exceptions import UnknownModel, ValidationError
from touchtrail.attribution.schema import (
    SETTINGS_BY_MODEL,
    AttributionModel,
    ModelSettings,
)

logger = logging.getLogger(__name__)

LOOKBACK_RANGE = (1, 90)
DECAY_BASE_RANGE = (0.1, 1.0)
TOUCH_WEIGHT_RANGE = (0.0, 1.0)
MIN_TOUCHES_RANGE = (1, 10)
POSITION_SUM_TOLERANCE = 0.001

Validator = Callable[[dict[str, Any]], list[str]]


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def _check_range(
    settings: dict[str, Any],
    name: str,
    bounds: tuple[float, float],
    integer: bool = False,
) -> list[str]:
    """Check an optional numeric field lies within inclusive bounds."""
    value = settings.get(name)
    if value is None:
        return []
    if integer and not (isinstance(value, int) and not isinstance(value, bool)):
        return [f"{name} must be an integer"]
    if not _is_number(value):
        return [f"{name} must be a number"]
    low, high = bounds
    if not low <= value <= high:
        return [f"{name} must be between {low} and {high}"]
    return []


def _validate_common(settings: dict[str, Any]) -> list[str]:
    errors = _check_range(settings, "lookback_window_days", LOOKBACK_RANGE, integer=True)
    errors += _check_range(settings, "min_touches_required", MIN_TOUCHES_RANGE, integer=True)
    return errors


def _validate_time_decay(settings: dict[str, Any]) -> list[str]:
    return _check_range(settings, "decay_base", DECAY_BASE_RANGE)


def _validate_position_based(settings: dict[str, Any]) -> list[str]:
    names = ("first_touch_weight", "last_touch_weight", "middle_touch_weight")
    errors = []
    for name in names:
        errors += _check_range(settings, name, TOUCH_WEIGHT_RANGE)
    if errors:
        return errors

    total = sum(settings.get(name) or 0 for name in names)
    if abs(total - 1.0) > POSITION_SUM_TOLERANCE:
        errors.append(f"Position-based weights must sum to 1 (got {total:.4f})")
    return errors


def _validate_custom(settings: dict[str, Any]) -> list[str]:
    weights = settings.get("custom_weights")
    if not isinstance(weights, dict) or not weights:
        return ["custom_weights must be a non-empty mapping of channel to weight"]

    errors = []
    for channel, weight in weights.items():
        if not isinstance(channel, str) or not channel:
            errors.append(f"Invalid channel name in custom_weights: {channel!r}")
        elif not _is_number(weight) or not 0 <= weight <= 1:
            errors.append(f"custom_weights[{channel}] must be between 0 and 1")
    return errors


@dataclass(frozen=True)
class ModelSpec:
    """Schema, defaults and validator for one attribution model."""

    model: AttributionModel
    settings_class: type
    validator: Validator | None = None

    @property
    def field_names(self) -> list[str]:
        """Settings fields this model accepts."""
        return [f.name for f in fields(self.settings_class)]

    def defaults(self) -> dict[str, Any]:
        """Default value for every settings field."""
        return self.settings_class().to_dict()

    def validate(self, settings: dict[str, Any]) -> list[str]:
        """Return a list of problems with ``settings`` (empty when valid)."""
        errors = _validate_common(settings)
        if self.validator is not None:
            errors += self.validator(settings)
        return errors


class ModelRegistry:
    """Registry of attribution models.

    Singleton pattern so configuration and computation share one view of
    the available models.

    Example:
        registry = ModelRegistry()
        settings = registry.validate(
            {"lookback_window_days": 14, "decay_base": 0.5},
            "time_decay",
        )
    """

    _instance: ModelRegistry | None = None
    _specs: dict[AttributionModel, ModelSpec]

    def __new__(cls) -> ModelRegistry:
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._specs = {}
        return cls._instance

    def register(self, spec: ModelSpec) -> None:
        """Register a model spec.

        Args:
            spec: The spec to register, replacing any existing one for the model.
        """
        self._specs[spec.model] = spec
        logger.debug(f"Registered attribution model: {spec.model.value}")

    def resolve(self, name: str | AttributionModel) -> ModelSpec:
        """Look up a model by name.

        Args:
            name: Model name, e.g. "time_decay".

        Returns:
            The registered ModelSpec.

        Raises:
            UnknownModel: If the name is not registered.
        """
        try:
            model = AttributionModel(name)
        except ValueError as e:
            raise UnknownModel(str(name)) from e

        spec = self._specs.get(model)
        if spec is None:
            raise UnknownModel(model.value)
        return spec

    def validate(self, settings: dict[str, Any], name: str | AttributionModel) -> ModelSettings:
        """Validate settings for a model at configuration time.

        Fields that do not apply to the model are dropped. Optional fields
        that are missing take the model defaults and are checked together
        with the supplied ones.

        Args:
            settings: Raw settings mapping.
            name: Model name.

        Returns:
            Typed settings for the model.

        Raises:
            UnknownModel: If the name is not registered.
            ValidationError: If lookback_window_days is missing or any field is
                out of range, listing every problem.
        """
        spec = self.resolve(name)
        relevant = {
            k: v for k, v in (settings or {}).items() if k in spec.field_names and v is not None
        }

        errors = []
        if "lookback_window_days" not in relevant:
            errors.append("lookback_window_days is required")
        return self._build(spec, relevant, errors)

    def build(self, name: str | AttributionModel, settings: dict[str, Any] | None = None) -> ModelSettings:
        """Build settings from stored config, filling defaults for every missing field.

        Raises:
            UnknownModel: If the name is not registered.
            ValidationError: If a stored value is out of range.
        """
        spec = self.resolve(name)
        relevant = {
            k: v for k, v in (settings or {}).items() if k in spec.field_names and v is not None
        }
        return self._build(spec, relevant, [])

    def _build(self, spec: ModelSpec, relevant: dict[str, Any], errors: list[str]) -> ModelSettings:
        candidate = spec.defaults()
        candidate.update(relevant)

        errors = errors + spec.validate(candidate)
        if errors:
            raise ValidationError(errors, model=spec.model.value)

        if "custom_weights" in candidate:
            candidate["custom_weights"] = {k: float(v) for k, v in candidate["custom_weights"].items()}
        return spec.settings_class(**candidate)

    def list_available(self) -> list[AttributionModel]:
        """List all registered models."""
        return list(self._specs.keys())

    def is_registered(self, name: str | AttributionModel) -> bool:
        """Check if a model name is registered."""
        try:
            self.resolve(name)
        except UnknownModel:
            return False
        return True


_VALIDATORS: dict[AttributionModel, Validator] = {
    AttributionModel.TIME_DECAY: _validate_time_decay,
    AttributionModel.POSITION_BASED: _validate_position_based,
    AttributionModel.CUSTOM: _validate_custom,
}

# Global registry instance
_registry = ModelRegistry()
for _model, _settings_class in SETTINGS_BY_MODEL.items():
    _registry.register(ModelSpec(_model, _settings_class, _VALIDATORS.get(_model)))


def get_registry() -> ModelRegistry:
    """Get the global model registry."""
    return _registry
