"""
Attribution schema - touchpoints, conversions, model settings and results.

The data model mirrors what the capture endpoints store:
- Touchpoint: a marketing interaction (page view, click) read from the event store
- Conversion: a value-bearing goal event credit is attributed to
- ModelSettings: one settings record per attribution model (tagged union)
- AttributionResult: one row per (conversion, attributed touchpoint)

All timestamps are timezone-aware datetime objects in UTC.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import uuid4

DIRECT_SOURCE = "direct"


class AttributionModel(str, Enum):
    """Attribution model used to split credit across touchpoints."""

    FIRST_TOUCH = "first_touch"
    LAST_TOUCH = "last_touch"
    LINEAR = "linear"  # Equal credit to all touchpoints
    TIME_DECAY = "time_decay"  # More credit to recent touchpoints
    POSITION_BASED = "position_based"  # First/last emphasis, middle shares the rest
    CUSTOM = "custom"  # Per-channel weights


@dataclass(frozen=True)
class Touchpoint:
    """
    Canonical touchpoint.

    Immutable once read from the event store. Sequences of touchpoints are
    ordered by timestamp ascending.
    """

    id: str
    timestamp: datetime
    source: str = DIRECT_SOURCE
    medium: str | None = None
    campaign: str | None = None
    ad_id: str | None = None
    visitor_id: str | None = None  # Visitor that produced the event


# Settings: one record per model, each carrying only the fields it uses.


@dataclass(frozen=True)
class _BaseSettings:
    """Fields shared by every model."""

    model: ClassVar[AttributionModel]

    lookback_window_days: int = 30
    min_touches_required: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary for storage."""
        data = asdict(self)
        if data.get("min_touches_required") is None:
            data.pop("min_touches_required", None)
        return data


@dataclass(frozen=True)
class FirstTouchSettings(_BaseSettings):
    """Full credit to the first touchpoint."""

    model: ClassVar[AttributionModel] = AttributionModel.FIRST_TOUCH


@dataclass(frozen=True)
class LastTouchSettings(_BaseSettings):
    """Full credit to the last touchpoint."""

    model: ClassVar[AttributionModel] = AttributionModel.LAST_TOUCH


@dataclass(frozen=True)
class LinearSettings(_BaseSettings):
    """Equal credit to every touchpoint."""

    model: ClassVar[AttributionModel] = AttributionModel.LINEAR


@dataclass(frozen=True)
class TimeDecaySettings(_BaseSettings):
    """Credit decays by ``decay_base`` per day before the last touchpoint."""

    model: ClassVar[AttributionModel] = AttributionModel.TIME_DECAY

    decay_base: float = 0.7


@dataclass(frozen=True)
class PositionBasedSettings(_BaseSettings):
    """Fixed shares for the first and last touchpoints, the rest split evenly."""

    model: ClassVar[AttributionModel] = AttributionModel.POSITION_BASED

    first_touch_weight: float = 0.4
    last_touch_weight: float = 0.4
    middle_touch_weight: float = 0.2


@dataclass(frozen=True)
class CustomSettings(_BaseSettings):
    """Credit proportional to a per-channel (source) weight."""

    model: ClassVar[AttributionModel] = AttributionModel.CUSTOM

    custom_weights: dict[str, float] = field(default_factory=dict)


ModelSettings = Union[
    FirstTouchSettings,
    LastTouchSettings,
    LinearSettings,
    TimeDecaySettings,
    PositionBasedSettings,
    CustomSettings,
]

SETTINGS_BY_MODEL: dict[AttributionModel, type[_BaseSettings]] = {
    AttributionModel.FIRST_TOUCH: FirstTouchSettings,
    AttributionModel.LAST_TOUCH: LastTouchSettings,
    AttributionModel.LINEAR: LinearSettings,
    AttributionModel.TIME_DECAY: TimeDecaySettings,
    AttributionModel.POSITION_BASED: PositionBasedSettings,
    AttributionModel.CUSTOM: CustomSettings,
}


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        timestamp = value
    elif isinstance(value, str):
        try:
            timestamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid timestamp format: {value}") from e
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


@dataclass
class Conversion:
    """
    A conversion event to attribute.

    Created once when the conversion arrives and never mutated afterwards.

    Example:
        conversion = Conversion(
            client_id="acme",
            visitor_id="v-123",
            conversion_type="purchase",
            value=150.00,
            currency="USD",
            timestamp=datetime.now(UTC),
        )
    """

    client_id: str
    visitor_id: str
    conversion_type: str = "purchase"
    id: str = field(default_factory=lambda: str(uuid4()))
    email_hash: str | None = None
    value: float | None = None
    currency: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "client_id": self.client_id,
            "visitor_id": self.visitor_id,
            "email_hash": self.email_hash,
            "conversion_type": self.conversion_type,
            "value": self.value,
            "currency": self.currency,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversion:
        """Create Conversion from a capture payload or stored row.

        Args:
            data: Dictionary containing conversion data.

        Returns:
            Conversion instance.

        Raises:
            ValueError: If a required field is missing, the value is not
                numeric, or the timestamp cannot be parsed.
        """
        for required in ("client_id", "visitor_id", "conversion_type", "timestamp"):
            if not data.get(required):
                raise ValueError(f"Missing required field: {required}")

        value = data.get("value")
        if value is not None:
            try:
                value = float(value)
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid value: {data.get('value')}") from e

        return cls(
            id=str(data["id"]) if data.get("id") else str(uuid4()),
            client_id=str(data["client_id"]),
            visitor_id=str(data["visitor_id"]),
            email_hash=data.get("email_hash"),
            conversion_type=str(data["conversion_type"]),
            value=value,
            currency=data.get("currency"),
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass(frozen=True)
class AttributionResult:
    """Credit assigned to one touchpoint (or to direct) for one conversion."""

    conversion_id: str
    client_id: str
    visitor_id: str
    attributed_event_id: str | None
    attribution_model: AttributionModel
    attribution_weight: float
    source: str
    timestamp: datetime
    credit: float = 0.0
    medium: str | None = None
    campaign: str | None = None
    ad_id: str | None = None

    @property
    def is_direct(self) -> bool:
        """Return True if no touchpoint was available for this conversion."""
        return self.attributed_event_id is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for result sink insertion."""
        return {
            "conversion_id": self.conversion_id,
            "client_id": self.client_id,
            "visitor_id": self.visitor_id,
            "attributed_event_id": self.attributed_event_id,
            "attribution_model": self.attribution_model.value,
            "attribution_weight": self.attribution_weight,
            "source": self.source,
            "medium": self.medium,
            "campaign": self.campaign,
            "ad_id": self.ad_id,
            "credit": self.credit,
            "timestamp": self.timestamp.isoformat(),
        }
