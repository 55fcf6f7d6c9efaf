"""Runtime configuration for the attribution engine."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class AttributionConfig(BaseModel):
    """Configuration for attribution runs and the BigQuery-backed stores."""

    project_id: str | None = None
    dataset: str = "touchtrail"
    location: str = "US"
    request_timeout: float = Field(default=30.0, gt=0)  # Seconds per store call
    default_model: str = "last_touch"
    default_lookback_days: int = Field(default=30, ge=1, le=90)

    @classmethod
    def from_env(cls) -> AttributionConfig:
        """Load configuration from environment variables."""
        return cls(
            project_id=os.getenv("TOUCHTRAIL_PROJECT_ID") or os.getenv("GCP_PROJECT_ID"),
            dataset=os.getenv("TOUCHTRAIL_DATASET", "touchtrail"),
            location=os.getenv("TOUCHTRAIL_BQ_LOCATION", "US"),
            request_timeout=float(os.getenv("TOUCHTRAIL_REQUEST_TIMEOUT", "30")),
            default_model=os.getenv("TOUCHTRAIL_DEFAULT_MODEL", "last_touch"),
            default_lookback_days=int(os.getenv("TOUCHTRAIL_DEFAULT_LOOKBACK_DAYS", "30")),
        )
