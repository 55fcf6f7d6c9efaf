#!/usr/bin/env python3
"""Preview every attribution model on a client's recent conversions.

This script:
1. Reads the client's most recent conversions from BigQuery
2. Rebuilds each conversion's touchpoint path (identity set + lookback window)
3. Prints the channel distribution each model would produce

Usage:
    TOUCHTRAIL_PROJECT_ID=my-project python scripts/preview_attribution_models.py acme --limit 200
"""

import argparse
import logging
from datetime import timedelta

from google.cloud import bigquery

from touchtrail.attribution import (
    AttributionConfig,
    Conversion,
    TouchpointNormalizer,
    get_registry,
    preview_model,
)
from touchtrail.attribution.storage import BigQueryEventStore, BigQueryIdentityResolver


def fetch_conversions(config, client_id, limit):
    """Fetch the client's most recent conversions."""
    client = bigquery.Client(project=config.project_id, location=config.location)
    query = f"""
    SELECT id, client_id, visitor_id, email_hash, conversion_type, value, currency, timestamp
    FROM `{config.project_id}.{config.dataset}.conversions`
    WHERE client_id = @client_id
    ORDER BY timestamp DESC
    LIMIT @limit
    """
    job_config = bigquery.QueryJobConfig(
        query_parameters=[
            bigquery.ScalarQueryParameter("client_id", "STRING", client_id),
            bigquery.ScalarQueryParameter("limit", "INT64", limit),
        ]
    )
    rows = client.query(query, job_config=job_config).result(timeout=config.request_timeout)
    return [Conversion.from_dict(dict(row)) for row in rows]


def build_paths(config, conversions, lookback_days):
    """Rebuild the touchpoint path for each conversion."""
    events = BigQueryEventStore(config)
    identities = BigQueryIdentityResolver(config)
    normalizer = TouchpointNormalizer()

    paths = []
    for conversion in conversions:
        visitor_ids = identities.resolve(conversion.client_id, conversion.visitor_id, conversion.email_hash)
        rows = events.fetch_touchpoints(
            conversion.client_id,
            visitor_ids,
            conversion.timestamp - timedelta(days=lookback_days),
            conversion.timestamp,
        )
        paths.append((normalizer.normalize(rows), conversion.value or 0.0))
    return paths


def print_previews(paths, lookback_days):
    """Print the channel distribution for every registered model."""
    for model in get_registry().list_available():
        if model.value == "custom":
            # Custom needs per-client channel weights
            continue

        preview = preview_model(paths, model, {"lookback_window_days": lookback_days})

        print("\n" + "=" * 60)
        print(f"{model.value} ({preview.attributed_conversions}/{preview.total_conversions} attributed)")
        print("=" * 60)
        for source, share in list(preview.channel_distribution.items())[:10]:
            print(f"  {source:30} {share:7.1%}")


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("client_id", help="Client to preview")
    parser.add_argument("--limit", type=int, default=100, help="Number of recent conversions")
    parser.add_argument("--lookback-days", type=int, default=30, help="Lookback window in days")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    config = AttributionConfig.from_env()

    print(f"Attribution model preview for {args.client_id}")
    print("=" * 60)

    conversions = fetch_conversions(config, args.client_id, args.limit)
    print(f"\nFetched {len(conversions)} conversions")

    paths = build_paths(config, conversions, args.lookback_days)
    direct = sum(1 for touchpoints, _ in paths if not touchpoints)
    print(f"Rebuilt {len(paths)} paths ({direct} with no touchpoints)")

    print_previews(paths, args.lookback_days)


if __name__ == "__main__":
    main()
