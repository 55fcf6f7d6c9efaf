"""Attribution orchestrator.

Coordinates one attribution run per conversion: resolve the client's model,
resolve the visitor's identity set, fetch the touchpoints inside the lookback
window, compute weights, allocate credit and write the results in one batch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from touchtrail.attribution.allocator import allocate
from touchtrail.attribution.calculator import compute_weights, resolve_settings
from touchtrail.attribution.config import AttributionConfig
from touchtrail.attribution.exceptions import (
    AttributionError,
    AttributionRunError,
    CollaboratorError,
    DuplicateAttributionError,
)
from touchtrail.attribution.normalizer import TouchpointNormalizer
from touchtrail.attribution.registry import ModelRegistry, get_registry
from touchtrail.attribution.schema import (
    AttributionModel,
    AttributionResult,
    Conversion,
    LastTouchSettings,
    ModelSettings,
    Touchpoint,
)
from touchtrail.attribution.stores import (
    ConversionRecorder,
    EventStore,
    IdentityResolver,
    ModelConfigStore,
    ResultSink,
)

logger = logging.getLogger(__name__)

FALLBACK_MIN_TOUCHES = "min_touches"

T = TypeVar("T")


class AttributionStatus(str, Enum):
    """Status of an attribution run."""

    PENDING = "pending"
    RESOLVING_MODEL = "resolving_model"
    RESOLVING_IDENTITY = "resolving_identity"
    FETCHING_TOUCHPOINTS = "fetching_touchpoints"
    CALCULATING = "calculating"
    WRITING = "writing"
    COMPLETED = "completed"
    SKIPPED = "skipped"  # Results already stored for this conversion and model
    FAILED = "failed"


@dataclass
class AttributionRun:
    """Outcome of attributing one conversion."""

    conversion_id: str
    status: AttributionStatus = AttributionStatus.PENDING
    model: AttributionModel | None = None
    requested_model: str | None = None
    fallback_reason: str | None = None
    visitor_ids: set[str] = field(default_factory=set)
    touchpoint_count: int = 0
    results: list[AttributionResult] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_success(self) -> bool:
        """Return True if results were written."""
        return self.status == AttributionStatus.COMPLETED

    @property
    def skipped(self) -> bool:
        """Return True if the conversion was already attributed."""
        return self.status == AttributionStatus.SKIPPED

    @property
    def is_direct(self) -> bool:
        """Return True if no touchpoint preceded the conversion."""
        return self.is_success and self.touchpoint_count == 0

    @property
    def fell_back(self) -> bool:
        """Return True if a different model than configured was applied."""
        return self.fallback_reason is not None

    @property
    def total_credit(self) -> float:
        """Sum of credit across the written results."""
        return sum(r.credit for r in self.results)

    @property
    def duration_seconds(self) -> float | None:
        """Return duration of the run in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class BatchAttributionResult:
    """Outcome of attributing several conversions."""

    runs: list[AttributionRun] = field(default_factory=list)
    failures: list[tuple[str, AttributionRunError]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        """Number of conversions attributed in this batch."""
        return sum(1 for run in self.runs if run.is_success)


class AttributionOrchestrator:
    """Orchestrates attribution runs against the external stores.

    The run for one conversion:
    1. Load the client's active model (default model if none is configured)
    2. Skip if results for this conversion and model already exist
    3. Resolve the identity set (visitor + visitors sharing the email hash)
    4. Fetch touchpoints in [timestamp - lookback, timestamp)
    5. Compute weights and allocate credit
    6. Write all results in one batch

    Example:
        >>> orchestrator = AttributionOrchestrator(
        ...     event_store=BigQueryEventStore(config),
        ...     identity_resolver=BigQueryIdentityResolver(config),
        ...     config_store=BigQueryModelConfigStore(config),
        ...     result_sink=BigQueryResultSink(config),
        ... )
        >>> run = orchestrator.attribute(conversion)
        >>> if run.is_direct:
        ...     print("No touchpoints, credited to direct")
    """

    def __init__(
        self,
        event_store: EventStore,
        identity_resolver: IdentityResolver,
        config_store: ModelConfigStore,
        result_sink: ResultSink,
        conversion_recorder: ConversionRecorder | None = None,
        registry: ModelRegistry | None = None,
        config: AttributionConfig | None = None,
        normalizer: TouchpointNormalizer | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            event_store: Source of touchpoint rows.
            identity_resolver: Email hash to visitor ids lookup.
            config_store: Per-client model configuration.
            result_sink: Destination for attribution results.
            conversion_recorder: Optional store used by record_and_attribute().
            registry: Model registry (default: global registry).
            config: Engine configuration (default: AttributionConfig()).
            normalizer: Touchpoint normalizer (default: TouchpointNormalizer()).
        """
        self.event_store = event_store
        self.identity_resolver = identity_resolver
        self.config_store = config_store
        self.result_sink = result_sink
        self.conversion_recorder = conversion_recorder
        self.registry = registry or get_registry()
        self.config = config or AttributionConfig()
        self.normalizer = normalizer or TouchpointNormalizer()

    def attribute(self, conversion: Conversion) -> AttributionRun:
        """Attribute a recorded conversion.

        Args:
            conversion: The conversion to attribute.

        Returns:
            AttributionRun describing what was written (or skipped).

        Raises:
            AttributionRunError: If any step fails. Nothing is written in that case.
        """
        run = AttributionRun(conversion_id=conversion.id, started_at=datetime.now(UTC))

        try:
            self._attribute(conversion, run)
        except AttributionError as e:
            run.status = AttributionStatus.FAILED
            run.completed_at = datetime.now(UTC)
            logger.error(f"Attribution failed for conversion {conversion.id}: {e}")
            raise AttributionRunError(conversion.id, e) from e

        run.completed_at = datetime.now(UTC)
        return run

    def record_and_attribute(self, conversion: Conversion) -> AttributionRun:
        """Persist a new conversion, then attribute it.

        Raises:
            ValueError: If no conversion recorder is configured.
            AttributionRunError: If recording or attribution fails.
        """
        if self.conversion_recorder is None:
            raise ValueError("record_and_attribute requires a conversion_recorder")

        try:
            conversion = self._call("record conversion", self.conversion_recorder.record, conversion)
        except CollaboratorError as e:
            logger.error(f"Failed to record conversion {conversion.id}: {e}")
            raise AttributionRunError(conversion.id, e) from e
        return self.attribute(conversion)

    def attribute_many(self, conversions: Iterable[Conversion]) -> BatchAttributionResult:
        """Attribute conversions one after another.

        A failing conversion is collected in ``failures`` and does not stop
        the rest of the batch.
        """
        batch = BatchAttributionResult()
        for conversion in conversions:
            try:
                batch.runs.append(self.attribute(conversion))
            except AttributionRunError as e:
                batch.failures.append((conversion.id, e))

        logger.info(
            f"Attributed {batch.succeeded} conversions "
            f"({len(batch.failures)} failed, {len(batch.runs) - batch.succeeded} skipped)"
        )
        return batch

    def resolve_model(self, client_id: str) -> tuple[ModelSettings, str, str | None]:
        """Resolve the settings to apply for a client.

        Returns:
            (settings, requested model name, fallback reason or None)

        Raises:
            ValidationError: If the stored settings are invalid.
            CollaboratorError: If the config store fails.
        """
        model_config = self._call("load model config", self.config_store.get_active, client_id)
        if model_config is None:
            model_name = self.config.default_model
            stored: dict[str, Any] = {}
        else:
            model_name = model_config.model_name
            stored = model_config.settings

        settings, fallback_reason = resolve_settings(
            model_name,
            stored,
            registry=self.registry,
            default_lookback_days=self.config.default_lookback_days,
        )
        return settings, model_name, fallback_reason

    def _attribute(self, conversion: Conversion, run: AttributionRun) -> None:
        """Run every step for one conversion, updating ``run`` as it goes."""
        # Naive conversion times are UTC, for the window and the result rows alike
        if conversion.timestamp.tzinfo is None:
            conversion = replace(conversion, timestamp=conversion.timestamp.replace(tzinfo=UTC))
        until = conversion.timestamp

        # Step 1: Model
        run.status = AttributionStatus.RESOLVING_MODEL
        settings, run.requested_model, run.fallback_reason = self.resolve_model(conversion.client_id)

        # Step 2: Already attributed?
        if self._call("check existing results", self.result_sink.exists, conversion.id, settings.model):
            self._skip(run, settings.model)
            return

        # Step 3: Identity set
        run.status = AttributionStatus.RESOLVING_IDENTITY
        run.visitor_ids = self._call(
            "resolve identity",
            self.identity_resolver.resolve,
            conversion.client_id,
            conversion.visitor_id,
            conversion.email_hash,
        )

        # Step 4: Touchpoints strictly before the conversion
        run.status = AttributionStatus.FETCHING_TOUCHPOINTS
        since = until - timedelta(days=settings.lookback_window_days)
        rows = self._call(
            "fetch touchpoints",
            self.event_store.fetch_touchpoints,
            conversion.client_id,
            run.visitor_ids,
            since,
            until,
        )
        touchpoints = self._within_window(self.normalizer.normalize(rows), since, until)
        run.touchpoint_count = len(touchpoints)

        # Step 5: Weights and credit
        run.status = AttributionStatus.CALCULATING
        if touchpoints and settings.min_touches_required and len(touchpoints) < settings.min_touches_required:
            logger.info(
                f"Conversion {conversion.id} has {len(touchpoints)} touchpoints, "
                f"fewer than {settings.min_touches_required} required by {settings.model.value}; "
                "using last_touch"
            )
            settings = LastTouchSettings(lookback_window_days=settings.lookback_window_days)
            run.fallback_reason = FALLBACK_MIN_TOUCHES

        run.model = settings.model
        weights = compute_weights(touchpoints, settings)
        results = allocate(weights, touchpoints, conversion, settings.model)

        # Step 6: Persist
        run.status = AttributionStatus.WRITING
        try:
            self._call("write results", self.result_sink.write, results)
        except DuplicateAttributionError:
            # Another worker attributed this conversion after the existence check
            self._skip(run, settings.model)
            return

        run.results = results
        run.status = AttributionStatus.COMPLETED
        if touchpoints:
            logger.info(
                f"Attributed conversion {conversion.id} across {len(results)} touchpoints "
                f"using {settings.model.value}"
            )
        else:
            logger.info(f"No touchpoints for conversion {conversion.id}, credited to direct")

    def _skip(self, run: AttributionRun, model: AttributionModel) -> None:
        run.model = model
        run.status = AttributionStatus.SKIPPED
        logger.warning(
            f"Conversion {run.conversion_id} already attributed with {model.value}, skipping"
        )

    def _within_window(
        self,
        touchpoints: list[Touchpoint],
        since: datetime,
        until: datetime,
    ) -> list[Touchpoint]:
        """Keep touchpoints in [since, until); a touchpoint at the conversion instant is excluded."""
        kept = [tp for tp in touchpoints if since <= tp.timestamp < until]
        if len(kept) != len(touchpoints):
            logger.debug(f"Discarded {len(touchpoints) - len(kept)} touchpoints outside the window")
        return kept

    def _call(self, step: str, func: Callable[..., T], *args: Any) -> T:
        """Call a store, mapping its failures to CollaboratorError.

        Timeouts are retryable. AttributionError subclasses pass through.
        """
        try:
            return func(*args)
        except AttributionError:
            raise
        except TimeoutError as e:
            raise CollaboratorError(f"Timed out during {step}", retryable=True) from e
        except Exception as e:
            raise CollaboratorError(f"Failed to {step}: {e}") from e
