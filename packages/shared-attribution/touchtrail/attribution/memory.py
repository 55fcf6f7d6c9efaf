"""In-process store implementations.

Used by tests and local runs. They honour the same contracts as the
BigQuery stores, including the (conversion_id, attribution_model)
uniqueness of the result sink.

Note:
    Each store guards its state with a lock, so a single instance can be
    shared by threads attributing different conversions.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from touchtrail.attribution.exceptions import DuplicateAttributionError, MalformedTouchpoint
from touchtrail.attribution.identity import usable_email_hash
from touchtrail.attribution.normalizer import parse_timestamp
from touchtrail.attribution.registry import ModelRegistry, get_registry
from touchtrail.attribution.schema import AttributionModel, AttributionResult, Conversion
from touchtrail.attribution.stores import (
    ConversionRecorder,
    EventStore,
    IdentityResolver,
    ModelConfig,
    ModelConfigStore,
    ResultSink,
)

logger = logging.getLogger(__name__)


class InMemoryEventStore(EventStore):
    """Event rows kept in a list, filtered on read.

    Example:
        >>> store = InMemoryEventStore()
        >>> store.add({"id": "e1", "client_id": "acme", "visitor_id": "v1",
        ...            "timestamp": "2025-01-15T10:00:00Z", "utm_source": "google"})
    """

    def __init__(self, rows: Iterable[dict[str, Any]] | None = None) -> None:
        self._rows: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        for row in rows or []:
            self.add(row)

    def add(self, row: dict[str, Any]) -> None:
        """Append an event row."""
        with self._lock:
            self._rows.append(dict(row))

    def fetch_touchpoints(
        self,
        client_id: str,
        visitor_ids: Iterable[str],
        since: datetime,
        until: datetime,
    ) -> list[dict[str, Any]]:
        wanted = set(visitor_ids)
        with self._lock:
            rows = list(self._rows)

        matched = []
        for row in rows:
            if row.get("client_id") != client_id or row.get("visitor_id") not in wanted:
                continue
            try:
                timestamp = parse_timestamp(row.get("timestamp"))
            except MalformedTouchpoint:
                logger.debug(f"Skipping event {row.get('id')} with unusable timestamp")
                continue
            if since <= timestamp < until:
                matched.append((timestamp, row))

        matched.sort(key=lambda pair: pair[0])
        return [row for _, row in matched]


class InMemoryIdentityResolver(IdentityResolver):
    """Identity map of (client, email hash) to visitor ids."""

    def __init__(self) -> None:
        self._map: dict[tuple[str, str], list[str]] = defaultdict(list)
        self._lock = threading.Lock()

    def link(self, client_id: str, email_hash: str, visitor_id: str) -> bool:
        """Link a visitor to an email hash.

        Returns:
            True if the visitor was newly linked, False if already present or
            the hash is invalid.
        """
        email_hash = usable_email_hash(email_hash)
        if not email_hash:
            return False

        with self._lock:
            visitor_ids = self._map[(client_id, email_hash)]
            if visitor_id in visitor_ids:
                return False
            visitor_ids.append(visitor_id)
        logger.info(f"Linked visitor {visitor_id} to email hash {email_hash[:12]}...")
        return True

    def visitor_ids_for(self, client_id: str, email_hash: str) -> set[str]:
        with self._lock:
            return set(self._map.get((client_id, email_hash), []))


class InMemoryConversionRecorder(ConversionRecorder):
    """Conversions kept by id."""

    def __init__(self) -> None:
        self.conversions: dict[str, Conversion] = {}
        self._lock = threading.Lock()

    def record(self, conversion: Conversion) -> Conversion:
        with self._lock:
            self.conversions[conversion.id] = conversion
        return conversion


class InMemoryModelConfigStore(ModelConfigStore):
    """One active model config per client."""

    def __init__(self, registry: ModelRegistry | None = None) -> None:
        self.registry = registry or get_registry()
        self._configs: dict[str, ModelConfig] = {}
        self._lock = threading.Lock()

    def get_active(self, client_id: str) -> ModelConfig | None:
        with self._lock:
            config = self._configs.get(client_id)
        if config is None or not config.is_active:
            return None
        return config

    def save(self, client_id: str, model_name: str, settings: dict[str, Any]) -> ModelConfig:
        validated = self.registry.validate(settings, model_name)
        config = ModelConfig(
            client_id=client_id,
            model_name=validated.model.value,
            settings=validated.to_dict(),
        )
        with self._lock:
            self._configs[client_id] = config
        logger.info(f"Saved {config.model_name} model config for client {client_id}")
        return config


class InMemoryResultSink(ResultSink):
    """Results kept in a list; each batch is applied all-or-nothing."""

    def __init__(self) -> None:
        self.results: list[AttributionResult] = []
        self._keys: set[tuple[str, AttributionModel]] = set()
        self._lock = threading.Lock()

    def write(self, results: Sequence[AttributionResult]) -> int:
        if not results:
            return 0

        keys = {(r.conversion_id, r.attribution_model) for r in results}
        with self._lock:
            for conversion_id, model in keys:
                if (conversion_id, model) in self._keys:
                    raise DuplicateAttributionError(conversion_id, model.value)
            self.results.extend(results)
            self._keys |= keys
        return len(results)

    def exists(self, conversion_id: str, model: AttributionModel) -> bool:
        with self._lock:
            return (conversion_id, AttributionModel(model)) in self._keys

    def for_conversion(self, conversion_id: str) -> list[AttributionResult]:
        """Return stored rows for one conversion."""
        with self._lock:
            return [r for r in self.results if r.conversion_id == conversion_id]
