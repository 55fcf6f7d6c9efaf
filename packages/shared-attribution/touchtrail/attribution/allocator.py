"""Credit allocation - turn touchpoint weights into AttributionResult rows."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from touchtrail.attribution.schema import (
    DIRECT_SOURCE,
    AttributionModel,
    AttributionResult,
    Conversion,
    Touchpoint,
)


def allocate(
    weights: Mapping[str, float],
    touchpoints: Sequence[Touchpoint],
    conversion: Conversion,
    model: AttributionModel,
) -> list[AttributionResult]:
    """
    Allocate a conversion's value across weighted touchpoints.

    With no weights (no touchpoints), a single "direct" row receives the full
    value. Otherwise every touchpoint with a non-zero weight gets one row,
    in touchpoint order, with credit = weight * conversion value.

    Args:
        weights: Touchpoint id to weight, as returned by compute_weights
        touchpoints: The touchpoints the weights were computed for
        conversion: Conversion being attributed
        model: Model that produced the weights

    Returns:
        AttributionResult rows for the result sink
    """
    value = conversion.value or 0.0

    if not weights:
        return [
            AttributionResult(
                conversion_id=conversion.id,
                client_id=conversion.client_id,
                visitor_id=conversion.visitor_id,
                attributed_event_id=None,
                attribution_model=model,
                attribution_weight=1.0,
                source=DIRECT_SOURCE,
                timestamp=conversion.timestamp,
                credit=value,
            )
        ]

    results = []
    seen: set[str] = set()
    for tp in touchpoints:
        weight = weights.get(tp.id, 0.0)
        if not weight or tp.id in seen:
            continue
        seen.add(tp.id)

        results.append(
            AttributionResult(
                conversion_id=conversion.id,
                client_id=conversion.client_id,
                visitor_id=tp.visitor_id or conversion.visitor_id,
                attributed_event_id=tp.id,
                attribution_model=model,
                attribution_weight=weight,
                source=tp.source,
                medium=tp.medium,
                campaign=tp.campaign,
                ad_id=tp.ad_id,
                timestamp=conversion.timestamp,
                credit=weight * value,
            )
        )

    return results
