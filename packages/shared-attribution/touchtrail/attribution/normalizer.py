"""
Touchpoint normalizer - transform stored event rows into canonical Touchpoints.

Event rows come from the capture endpoint in two shapes:
- flat columns (utm_source, gclid, ...) as stored in the events table
- nested payloads (utm_params.source, click_ids.gclid, ...) as sent by the tracker

Both are accepted. Click identifiers resolve to a single ad_id using a fixed
priority: gclid, fbclid, ttclid, msclkid. The first non-empty value wins.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime
from typing import Any

import pandas as pd

from touchtrail.attribution.exceptions import MalformedTouchpoint
from touchtrail.attribution.schema import DIRECT_SOURCE, Touchpoint

logger = logging.getLogger(__name__)

CLICK_ID_PRIORITY = ("gclid", "fbclid", "ttclid", "msclkid")


def _is_missing(value: Any) -> bool:
    """True for None, NaN/NaT and blank strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        # Containers (dicts, lists) are never "missing"
        return False


def _clean(value: Any) -> str | None:
    """Return a stripped string, or None for missing values."""
    if _is_missing(value):
        return None
    return str(value).strip()


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a stored event timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (a trailing ``Z`` is allowed), datetime and
    pandas Timestamp objects, and epoch milliseconds as sent by the tracker.
    Naive values are taken as UTC.

    Raises:
        MalformedTouchpoint: If the value is missing or cannot be parsed.
    """
    if _is_missing(value):
        raise MalformedTouchpoint(f"Missing timestamp: {value!r}")

    if isinstance(value, pd.Timestamp):
        timestamp = value.to_pydatetime()
    elif isinstance(value, datetime):
        timestamp = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            raise MalformedTouchpoint(f"Invalid timestamp: {value!r}")
        try:
            timestamp = datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise MalformedTouchpoint(f"Invalid timestamp: {value!r}") from e
    elif isinstance(value, str):
        try:
            timestamp = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedTouchpoint(f"Invalid timestamp format: {value}") from e
    else:
        raise MalformedTouchpoint(f"Invalid timestamp: {value!r}")

    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


def _nested(row: dict[str, Any], key: str) -> dict[str, Any]:
    """Return a nested mapping column (dict or JSON string), or {}."""
    value = row.get(key)
    if isinstance(value, str) and value.strip():
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unparsable {key} column: {value[:50]}")
            return {}
    return value if isinstance(value, dict) else {}


def resolve_ad_id(row: dict[str, Any]) -> str | None:
    """Pick the ad identifier from a row's click ids.

    Checks the ``click_ids`` mapping first and then the flat column of the
    same name, for each id in CLICK_ID_PRIORITY order.

    Example:
        >>> resolve_ad_id({"click_ids": {"fbclid": "fb1"}, "gclid": "g1"})
        'g1'
    """
    click_ids = _nested(row, "click_ids")
    for key in CLICK_ID_PRIORITY:
        for candidate in (click_ids.get(key), row.get(key)):
            value = _clean(candidate)
            if value:
                return value
    return None


class TouchpointNormalizer:
    """
    Normalize raw event rows into Touchpoints.

    Example:
        normalizer = TouchpointNormalizer()
        touchpoints = normalizer.normalize(event_rows)
    """

    def normalize_row(self, row: dict[str, Any]) -> Touchpoint:
        """
        Normalize a single event row.

        Args:
            row: Raw event row from the event store

        Returns:
            Canonical Touchpoint

        Raises:
            MalformedTouchpoint: If the id is missing or the timestamp is unparsable
        """
        event_id = _clean(row.get("id")) or _clean(row.get("event_id"))
        if not event_id:
            raise MalformedTouchpoint("Missing required field: id")

        timestamp = parse_timestamp(row.get("timestamp"))
        utm_params = _nested(row, "utm_params")

        def utm(name: str) -> str | None:
            return _clean(row.get(f"utm_{name}")) or _clean(utm_params.get(name))

        return Touchpoint(
            id=event_id,
            timestamp=timestamp,
            source=utm("source") or DIRECT_SOURCE,
            medium=utm("medium"),
            campaign=utm("campaign"),
            ad_id=resolve_ad_id(row),
            visitor_id=_clean(row.get("visitor_id")),
        )

    def normalize(
        self,
        data: pd.DataFrame | list[dict[str, Any]],
    ) -> list[Touchpoint]:
        """
        Normalize a batch of event rows.

        Malformed rows are dropped with a warning; the batch continues.

        Args:
            data: Event rows as DataFrame or list of dicts

        Returns:
            Touchpoints sorted by timestamp ascending
        """
        rows = data.to_dict(orient="records") if isinstance(data, pd.DataFrame) else data
        touchpoints = []

        for row in rows:
            try:
                touchpoints.append(self.normalize_row(row))
            except MalformedTouchpoint as e:
                logger.warning(f"Dropping malformed touchpoint {row.get('id')}: {e}")

        # Stable sort keeps store order for equal timestamps
        touchpoints.sort(key=lambda tp: tp.timestamp)
        return touchpoints
