"""
TouchTrail Attribution - multi-touch credit for marketing conversions.

Provides:
- Canonical touchpoints from tracked events (UTM parameters, click ids)
- A registry of attribution models with validated settings
- Weight calculation for first-touch, last-touch, linear, time-decay,
  position-based and custom models
- Credit allocation with a "direct" fallback when nothing preceded the conversion
- An orchestrator that ties identity stitching, event lookup and result storage together

Usage:
    from touchtrail.attribution import (
        AttributionOrchestrator,
        Conversion,
        compute_weights,
        get_registry,
    )

    # Validate settings when a client configures a model
    settings = get_registry().validate(
        {"lookback_window_days": 30, "decay_base": 0.5},
        "time_decay",
    )

    # Compute weights directly
    weights = compute_weights(touchpoints, settings)

    # Or run the full pipeline against the stores
    run = orchestrator.attribute(conversion)
"""

from touchtrail.attribution.allocator import allocate
from touchtrail.attribution.calculator import (
    WeightCalculation,
    calculate,
    compute_weights,
    resolve_settings,
)
from touchtrail.attribution.config import AttributionConfig
from touchtrail.attribution.exceptions import (
    AttributionError,
    AttributionRunError,
    CollaboratorError,
    ContractViolation,
    DuplicateAttributionError,
    MalformedTouchpoint,
    UnknownModel,
    ValidationError,
)
from touchtrail.attribution.identity import hash_email, is_valid_email_hash
from touchtrail.attribution.normalizer import TouchpointNormalizer
from touchtrail.attribution.orchestrator import (
    AttributionOrchestrator,
    AttributionRun,
    AttributionStatus,
    BatchAttributionResult,
)
from touchtrail.attribution.registry import ModelRegistry, ModelSpec, get_registry
from touchtrail.attribution.reporting import (
    AttributionPreview,
    preview_model,
    summarize_credit,
)
from touchtrail.attribution.schema import (
    AttributionModel,
    AttributionResult,
    Conversion,
    CustomSettings,
    FirstTouchSettings,
    LastTouchSettings,
    LinearSettings,
    ModelSettings,
    PositionBasedSettings,
    TimeDecaySettings,
    Touchpoint,
)
from touchtrail.attribution.stores import (
    ConversionRecorder,
    EventStore,
    IdentityResolver,
    ModelConfig,
    ModelConfigStore,
    ResultSink,
)

__all__ = [
    # Schema
    "Touchpoint",
    "Conversion",
    "AttributionModel",
    "AttributionResult",
    "ModelSettings",
    "FirstTouchSettings",
    "LastTouchSettings",
    "LinearSettings",
    "TimeDecaySettings",
    "PositionBasedSettings",
    "CustomSettings",
    # Engine
    "TouchpointNormalizer",
    "ModelRegistry",
    "ModelSpec",
    "get_registry",
    "compute_weights",
    "calculate",
    "resolve_settings",
    "WeightCalculation",
    "allocate",
    # Orchestration
    "AttributionOrchestrator",
    "AttributionRun",
    "AttributionStatus",
    "BatchAttributionResult",
    "AttributionConfig",
    # Stores
    "EventStore",
    "IdentityResolver",
    "ConversionRecorder",
    "ModelConfigStore",
    "ResultSink",
    "ModelConfig",
    # Identity
    "hash_email",
    "is_valid_email_hash",
    # Reporting
    "summarize_credit",
    "preview_model",
    "AttributionPreview",
    # Errors
    "AttributionError",
    "MalformedTouchpoint",
    "ValidationError",
    "UnknownModel",
    "ContractViolation",
    "CollaboratorError",
    "DuplicateAttributionError",
    "AttributionRunError",
]
