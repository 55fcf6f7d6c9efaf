"""
Reporting helpers over attribution results.

Provides:
- Credit totals per source/campaign/ad (what the result sync job relays)
- Model previews over sample conversion paths (what a client sees before
  switching models)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pandas as pd

from touchtrail.attribution.calculator import calculate
from touchtrail.attribution.registry import ModelRegistry
from touchtrail.attribution.schema import (
    DIRECT_SOURCE,
    AttributionModel,
    AttributionResult,
    ModelSettings,
    Touchpoint,
)

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["source", "campaign", "ad_id", "conversions"]


def summarize_credit(
    results: Iterable[AttributionResult],
    model: AttributionModel | str | None = None,
    since: datetime | None = None,
) -> pd.DataFrame:
    """
    Total credit per source, campaign and ad.

    Missing source is reported as "direct"; missing campaign/ad_id stay None.

    Args:
        results: Attribution results to aggregate
        model: Only include results produced by this model
        since: Only include results for conversions at or after this time

    Returns:
        DataFrame with columns source, campaign, ad_id, conversions,
        sorted by conversions descending
    """
    wanted = AttributionModel(model) if model else None
    rows = [
        {
            "source": r.source or DIRECT_SOURCE,
            # Placeholder so groupby keeps null keys
            "campaign": r.campaign or "none",
            "ad_id": r.ad_id or "none",
            "conversions": r.credit,
        }
        for r in results
        if (wanted is None or r.attribution_model == wanted)
        and (since is None or r.timestamp >= since)
    ]
    if not rows:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    df = pd.DataFrame(rows)
    summary = (
        df.groupby(["source", "campaign", "ad_id"], as_index=False)["conversions"]
        .sum()
        .sort_values("conversions", ascending=False, kind="stable")
        .reset_index(drop=True)
    )
    summary = summary.astype({"campaign": object, "ad_id": object})
    summary.loc[summary["campaign"] == "none", "campaign"] = None
    summary.loc[summary["ad_id"] == "none", "ad_id"] = None
    return summary[SUMMARY_COLUMNS]


@dataclass
class AttributionPath:
    """One converting visitor's touchpoints and the resulting weights."""

    touchpoints: list[Touchpoint]
    conversion_value: float = 0.0
    attribution_weights: dict[str, float] = field(default_factory=dict)


@dataclass
class AttributionPreview:
    """How a model would split credit over a sample of paths."""

    model: AttributionModel
    total_conversions: int = 0
    attributed_conversions: int = 0
    channel_distribution: dict[str, float] = field(default_factory=dict)
    sample_paths: list[AttributionPath] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "model": self.model.value,
            "total_conversions": self.total_conversions,
            "attributed_conversions": self.attributed_conversions,
            "channel_distribution": dict(self.channel_distribution),
        }


def preview_model(
    paths: Sequence[tuple[Sequence[Touchpoint], float]],
    model_name: str | AttributionModel,
    settings: dict[str, Any] | ModelSettings | None = None,
    registry: ModelRegistry | None = None,
    max_samples: int = 5,
) -> AttributionPreview:
    """
    Preview a model over sample conversion paths.

    The channel distribution is each source's share of total weight across
    all paths (conversions with no touchpoints count towards "direct").

    Args:
        paths: (touchpoints sorted ascending, conversion value) per conversion
        model_name: Model to preview
        settings: Settings to preview it with (model defaults when omitted)
        registry: Registry to resolve the model against
        max_samples: Number of paths to keep in sample_paths

    Returns:
        AttributionPreview
    """
    channel_totals: dict[str, float] = defaultdict(float)
    preview: AttributionPreview | None = None
    sample_paths = []
    attributed = 0

    for touchpoints, value in paths:
        calculation = calculate(touchpoints, model_name, settings, registry=registry)
        if preview is None:
            preview = AttributionPreview(model=calculation.model)

        if calculation.weights:
            attributed += 1
            sources = {tp.id: tp.source for tp in touchpoints}
            for tp_id, weight in calculation.weights.items():
                channel_totals[sources[tp_id]] += weight
        else:
            channel_totals[DIRECT_SOURCE] += 1.0

        if len(sample_paths) < max_samples:
            sample_paths.append(
                AttributionPath(
                    touchpoints=list(touchpoints),
                    conversion_value=value,
                    attribution_weights=calculation.weights,
                )
            )

    if preview is None:
        preview = AttributionPreview(model=calculate([], model_name, settings, registry=registry).model)

    total_weight = sum(channel_totals.values())
    preview.total_conversions = len(paths)
    preview.attributed_conversions = attributed
    preview.channel_distribution = {
        source: weight / total_weight
        for source, weight in sorted(channel_totals.items(), key=lambda item: -item[1])
    } if total_weight else {}
    preview.sample_paths = sample_paths

    logger.debug(f"Previewed {preview.model.value} over {len(paths)} paths")
    return preview
