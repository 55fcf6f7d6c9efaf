"""Interfaces to the stores the attribution engine reads from and writes to.

The engine never owns storage. It talks to five collaborators:
- EventStore: append-only touchpoint rows (read-only here)
- IdentityResolver: email hash -> visitor ids (cross-device stitching)
- ConversionRecorder: persists conversions before attribution runs
- ModelConfigStore: the active attribution model per client
- ResultSink: durable AttributionResult rows

Implementations live in ``touchtrail.attribution.storage`` (BigQuery) and
``touchtrail.attribution.memory`` (in-process).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from touchtrail.attribution.identity import usable_email_hash
from touchtrail.attribution.schema import AttributionModel, AttributionResult, Conversion


@dataclass
class ModelConfig:
    """Active attribution model for a client, as stored."""

    client_id: str
    model_name: str
    settings: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    @property
    def lookback_window_days(self) -> int | None:
        """Stored lookback window, if any."""
        return self.settings.get("lookback_window_days")


class EventStore(ABC):
    """Read access to stored touchpoint events."""

    @abstractmethod
    def fetch_touchpoints(
        self,
        client_id: str,
        visitor_ids: Iterable[str],
        since: datetime,
        until: datetime,
    ) -> list[dict[str, Any]]:
        """Return raw event rows for any of ``visitor_ids``.

        Rows satisfy ``since <= timestamp < until`` and are ordered by
        timestamp ascending.
        """
        pass  # pragma: no cover


class IdentityResolver(ABC):
    """Resolve the set of visitor ids believed to belong to one person."""

    @abstractmethod
    def visitor_ids_for(self, client_id: str, email_hash: str) -> set[str]:
        """Return every visitor id linked to ``email_hash`` for the client."""
        pass  # pragma: no cover

    def resolve(self, client_id: str, visitor_id: str, email_hash: str | None = None) -> set[str]:
        """Return the identity set for a visitor, always including the visitor itself.

        Args:
            client_id: Client the visitor belongs to.
            visitor_id: Visitor that converted.
            email_hash: Optional SHA-256 email hash for cross-device stitching.
        """
        visitor_ids = {visitor_id}
        email_hash = usable_email_hash(email_hash)
        if email_hash:
            visitor_ids |= self.visitor_ids_for(client_id, email_hash)
        return visitor_ids


class ConversionRecorder(ABC):
    """Persist conversions."""

    @abstractmethod
    def record(self, conversion: Conversion) -> Conversion:
        """Store the conversion and return it as stored."""
        pass  # pragma: no cover


class ModelConfigStore(ABC):
    """Per-client attribution model configuration."""

    @abstractmethod
    def get_active(self, client_id: str) -> ModelConfig | None:
        """Return the client's active model config, or None if unset."""
        pass  # pragma: no cover

    @abstractmethod
    def save(self, client_id: str, model_name: str, settings: dict[str, Any]) -> ModelConfig:
        """Validate and store a model config, making it the active one.

        Raises:
            UnknownModel: If the model name is not registered.
            ValidationError: If the settings fail validation.
        """
        pass  # pragma: no cover


class ResultSink(ABC):
    """Durable storage for attribution results."""

    @abstractmethod
    def write(self, results: Sequence[AttributionResult]) -> int:
        """Write all rows for one conversion as a single batch.

        Returns:
            Number of rows written.

        Raises:
            DuplicateAttributionError: If rows already exist for the
                conversion and model.
        """
        pass  # pragma: no cover

    @abstractmethod
    def exists(self, conversion_id: str, model: AttributionModel) -> bool:
        """Return True if results are stored for the conversion and model."""
        pass  # pragma: no cover
