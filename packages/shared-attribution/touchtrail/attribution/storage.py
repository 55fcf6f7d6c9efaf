"""BigQuery-backed stores for events, identities, conversions, models and results.

All tables live in one dataset (``{project_id}.{dataset}``). Every query is
parameterized and waits at most ``request_timeout`` seconds. BigQuery API
failures and timeouts surface as CollaboratorError; timeouts and server-side
errors are marked retryable.
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from google.api_core import exceptions as api_exceptions

from touchtrail.attribution.config import AttributionConfig
from touchtrail.attribution.exceptions import CollaboratorError, DuplicateAttributionError
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

if TYPE_CHECKING:
    from google.cloud import bigquery

logger = logging.getLogger(__name__)

# SQL for creating the tables the engine reads and writes
CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS `{dataset_ref}.events` (
    id STRING NOT NULL,
    client_id STRING NOT NULL,
    visitor_id STRING NOT NULL,
    event_type STRING NOT NULL,
    utm_source STRING,
    utm_medium STRING,
    utm_campaign STRING,
    utm_content STRING,
    utm_term STRING,
    click_ids JSON,
    gclid STRING,
    fbclid STRING,
    ttclid STRING,
    msclkid STRING,
    page_url STRING,
    referrer STRING,
    email_hash STRING,
    timestamp TIMESTAMP NOT NULL
);
CREATE TABLE IF NOT EXISTS `{dataset_ref}.identity_map` (
    email_hash STRING NOT NULL,
    client_id STRING NOT NULL,
    visitor_ids ARRAY<STRING>,
    updated_at TIMESTAMP
);
CREATE TABLE IF NOT EXISTS `{dataset_ref}.conversions` (
    id STRING NOT NULL,
    client_id STRING NOT NULL,
    visitor_id STRING NOT NULL,
    email_hash STRING,
    conversion_type STRING NOT NULL,
    value NUMERIC,
    currency STRING,
    timestamp TIMESTAMP NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
);
CREATE TABLE IF NOT EXISTS `{dataset_ref}.attribution_models` (
    client_id STRING NOT NULL,
    name STRING NOT NULL,
    settings JSON,
    is_active BOOL DEFAULT TRUE,
    updated_at TIMESTAMP
);
CREATE TABLE IF NOT EXISTS `{dataset_ref}.attribution_results` (
    conversion_id STRING NOT NULL,
    client_id STRING NOT NULL,
    visitor_id STRING NOT NULL,
    attributed_event_id STRING,
    attribution_model STRING NOT NULL,
    attribution_weight FLOAT64 NOT NULL,
    source STRING,
    medium STRING,
    campaign STRING,
    ad_id STRING,
    credit FLOAT64 DEFAULT 0,
    timestamp TIMESTAMP NOT NULL
)
"""

RETRYABLE_ERRORS = (
    api_exceptions.ServerError,
    api_exceptions.TooManyRequests,
    api_exceptions.DeadlineExceeded,
)


class BigQueryStore:
    """Shared plumbing for the BigQuery stores.

    Example:
        >>> config = AttributionConfig(project_id="my-project")
        >>> events = BigQueryEventStore(config)
        >>> events.ensure_tables_exist()
    """

    def __init__(
        self,
        config: AttributionConfig | None = None,
        client: bigquery.Client | None = None,
    ):
        """Initialize the store.

        Args:
            config: Project, dataset and timeout settings. Loaded from the
                environment when not provided.
            client: Optional BigQuery client. Will be created if not provided.
        """
        self.config = config or AttributionConfig.from_env()
        self._client = client

    @property
    def client(self) -> bigquery.Client:
        """Lazy-initialize BigQuery client."""
        if self._client is None:
            from google.cloud import bigquery

            self._client = bigquery.Client(
                project=self.config.project_id,
                location=self.config.location,
            )
        return self._client

    @property
    def dataset_ref(self) -> str:
        """Fully qualified dataset reference."""
        return f"{self.config.project_id}.{self.config.dataset}"

    def table_id(self, table: str) -> str:
        """Fully qualified table ID."""
        return f"{self.dataset_ref}.{table}"

    def ensure_tables_exist(self) -> None:
        """Create the engine's tables if they don't exist."""
        self._run(CREATE_TABLES_SQL.format(dataset_ref=self.dataset_ref), [])
        logger.info(f"Ensured attribution tables exist in {self.dataset_ref}")

    def _run(self, sql: str, parameters: list[Any]) -> Any:
        """Run a parameterized query and wait for its result.

        Raises:
            CollaboratorError: If BigQuery fails or the timeout elapses.
        """
        from google.cloud import bigquery

        job_config = bigquery.QueryJobConfig(query_parameters=parameters)
        try:
            return self.client.query(sql, job_config=job_config).result(
                timeout=self.config.request_timeout
            )
        except concurrent.futures.TimeoutError as e:
            raise CollaboratorError(
                f"BigQuery request timed out after {self.config.request_timeout}s",
                retryable=True,
            ) from e
        except api_exceptions.GoogleAPICallError as e:
            raise CollaboratorError(
                f"BigQuery request failed: {e}",
                retryable=isinstance(e, RETRYABLE_ERRORS),
            ) from e


class BigQueryEventStore(BigQueryStore, EventStore):
    """Touchpoint events stored by the capture endpoint."""

    def fetch_touchpoints(
        self,
        client_id: str,
        visitor_ids: Iterable[str],
        since: datetime,
        until: datetime,
    ) -> list[dict[str, Any]]:
        from google.cloud import bigquery

        sql = f"""
        SELECT
            id, visitor_id, timestamp,
            utm_source, utm_medium, utm_campaign,
            TO_JSON_STRING(click_ids) AS click_ids,
            gclid, fbclid, ttclid, msclkid
        FROM `{self.table_id("events")}`
        WHERE client_id = @client_id
            AND visitor_id IN UNNEST(@visitor_ids)
            AND timestamp >= @since
            AND timestamp < @until
        ORDER BY timestamp ASC
        """

        result = self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("client_id", "STRING", client_id),
                bigquery.ArrayQueryParameter("visitor_ids", "STRING", sorted(set(visitor_ids))),
                bigquery.ScalarQueryParameter("since", "TIMESTAMP", since),
                bigquery.ScalarQueryParameter("until", "TIMESTAMP", until),
            ],
        )
        return [dict(row) for row in result]


class BigQueryIdentityResolver(BigQueryStore, IdentityResolver):
    """Identity map maintained by the capture endpoint."""

    def visitor_ids_for(self, client_id: str, email_hash: str) -> set[str]:
        from google.cloud import bigquery

        sql = f"""
        SELECT visitor_ids
        FROM `{self.table_id("identity_map")}`
        WHERE email_hash = @email_hash AND client_id = @client_id
        """

        result = self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("email_hash", "STRING", email_hash),
                bigquery.ScalarQueryParameter("client_id", "STRING", client_id),
            ],
        )
        visitor_ids: set[str] = set()
        for row in result:
            visitor_ids.update(row.get("visitor_ids") or [])
        return visitor_ids


class BigQueryConversionRecorder(BigQueryStore, ConversionRecorder):
    """Conversions table."""

    def record(self, conversion: Conversion) -> Conversion:
        from google.cloud import bigquery

        sql = f"""
        INSERT INTO `{self.table_id("conversions")}`
            (id, client_id, visitor_id, email_hash, conversion_type, value, currency, timestamp)
        VALUES
            (@id, @client_id, @visitor_id, @email_hash, @conversion_type, @value, @currency, @timestamp)
        """

        self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("id", "STRING", conversion.id),
                bigquery.ScalarQueryParameter("client_id", "STRING", conversion.client_id),
                bigquery.ScalarQueryParameter("visitor_id", "STRING", conversion.visitor_id),
                bigquery.ScalarQueryParameter("email_hash", "STRING", conversion.email_hash),
                bigquery.ScalarQueryParameter("conversion_type", "STRING", conversion.conversion_type),
                bigquery.ScalarQueryParameter("value", "FLOAT64", conversion.value),
                bigquery.ScalarQueryParameter("currency", "STRING", conversion.currency),
                bigquery.ScalarQueryParameter("timestamp", "TIMESTAMP", conversion.timestamp),
            ],
        )
        logger.info(f"Recorded conversion {conversion.id} for client {conversion.client_id}")
        return conversion


class BigQueryModelConfigStore(BigQueryStore, ModelConfigStore):
    """Attribution model configuration per client."""

    def __init__(
        self,
        config: AttributionConfig | None = None,
        client: bigquery.Client | None = None,
        registry: ModelRegistry | None = None,
    ):
        super().__init__(config=config, client=client)
        self.registry = registry or get_registry()

    def get_active(self, client_id: str) -> ModelConfig | None:
        from google.cloud import bigquery

        sql = f"""
        SELECT client_id, name, TO_JSON_STRING(settings) AS settings, is_active
        FROM `{self.table_id("attribution_models")}`
        WHERE client_id = @client_id AND is_active = TRUE
        ORDER BY updated_at DESC
        LIMIT 1
        """

        result = self._run(
            sql,
            [bigquery.ScalarQueryParameter("client_id", "STRING", client_id)],
        )
        rows = list(result)
        if not rows:
            return None
        return self._row_to_config(rows[0])

    def save(self, client_id: str, model_name: str, settings: dict[str, Any]) -> ModelConfig:
        from google.cloud import bigquery

        validated = self.registry.validate(settings, model_name)
        config = ModelConfig(
            client_id=client_id,
            model_name=validated.model.value,
            settings=validated.to_dict(),
        )

        # Deactivate and insert in one transaction so a client never has two active models
        sql = f"""
        BEGIN TRANSACTION;
        UPDATE `{self.table_id("attribution_models")}`
        SET is_active = FALSE
        WHERE client_id = @client_id AND is_active = TRUE;
        INSERT INTO `{self.table_id("attribution_models")}`
            (client_id, name, settings, is_active, updated_at)
        VALUES
            (@client_id, @name, PARSE_JSON(@settings), TRUE, @updated_at);
        COMMIT TRANSACTION;
        """

        self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("client_id", "STRING", client_id),
                bigquery.ScalarQueryParameter("name", "STRING", config.model_name),
                bigquery.ScalarQueryParameter("settings", "STRING", json.dumps(config.settings)),
                bigquery.ScalarQueryParameter("updated_at", "TIMESTAMP", datetime.now(UTC)),
            ],
        )
        logger.info(f"Saved {config.model_name} model config for client {client_id}")
        return config

    def _row_to_config(self, row: Any) -> ModelConfig:
        """Convert a BigQuery row to ModelConfig.

        Raises:
            TypeError: If settings has an unexpected type.
        """
        settings = row.get("settings")
        if isinstance(settings, str):
            settings = json.loads(settings) or {}
        elif isinstance(settings, dict):
            pass  # Already parsed
        elif settings is None:
            settings = {}
        else:
            raise TypeError(
                f"Unexpected type for settings: {type(settings).__name__}. "
                f"Expected str, dict, or None."
            )

        return ModelConfig(
            client_id=row["client_id"],
            model_name=row["name"],
            settings=settings,
            is_active=row.get("is_active", True),
        )


class BigQueryResultSink(BigQueryStore, ResultSink):
    """Attribution results, written one conversion per load job.

    A load job either appends every row or none, so a conversion never ends
    up half-attributed. BigQuery has no unique constraints; ``write`` checks
    for existing (conversion_id, attribution_model) rows first.
    """

    def write(self, results: Sequence[AttributionResult]) -> int:
        from google.cloud import bigquery

        if not results:
            return 0

        for conversion_id, model in {(r.conversion_id, r.attribution_model) for r in results}:
            if self.exists(conversion_id, model):
                raise DuplicateAttributionError(conversion_id, model.value)

        job_config = bigquery.LoadJobConfig(
            write_disposition=bigquery.WriteDisposition.WRITE_APPEND,
        )
        rows = [r.to_dict() for r in results]
        try:
            self.client.load_table_from_json(
                rows,
                self.table_id("attribution_results"),
                job_config=job_config,
            ).result(timeout=self.config.request_timeout)
        except concurrent.futures.TimeoutError as e:
            raise CollaboratorError(
                f"Result write timed out after {self.config.request_timeout}s",
                retryable=True,
            ) from e
        except api_exceptions.GoogleAPICallError as e:
            raise CollaboratorError(
                f"Result write failed: {e}",
                retryable=isinstance(e, RETRYABLE_ERRORS),
            ) from e

        logger.info(f"Wrote {len(rows)} attribution results for conversion {results[0].conversion_id}")
        return len(rows)

    def exists(self, conversion_id: str, model: AttributionModel) -> bool:
        from google.cloud import bigquery

        sql = f"""
        SELECT 1
        FROM `{self.table_id("attribution_results")}`
        WHERE conversion_id = @conversion_id AND attribution_model = @attribution_model
        LIMIT 1
        """

        result = self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("conversion_id", "STRING", conversion_id),
                bigquery.ScalarQueryParameter(
                    "attribution_model", "STRING", AttributionModel(model).value
                ),
            ],
        )
        return len(list(result)) > 0
