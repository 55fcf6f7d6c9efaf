"""Shared pytest fixtures for TouchTrail packages."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def mock_bigquery_client():
    """Mock google.cloud.bigquery.Client for testing."""
    with patch("google.cloud.bigquery.Client") as mock:
        client = MagicMock()
        mock.return_value = client
        yield client


@pytest.fixture
def conversion_time():
    """Instant the sample conversion happened."""
    return datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def sample_event_rows():
    """Event rows as stored by the capture endpoint, oldest first."""
    return [
        {
            "id": "evt-001",
            "client_id": "acme",
            "visitor_id": "visitor-laptop",
            "event_type": "pageview",
            "utm_source": "google",
            "utm_medium": "cpc",
            "utm_campaign": "winter_sale",
            "click_ids": {"gclid": "gclid-abc"},
            "timestamp": "2025-01-13T12:00:00Z",
        },
        {
            "id": "evt-002",
            "client_id": "acme",
            "visitor_id": "visitor-phone",
            "event_type": "pageview",
            "utm_source": "facebook",
            "utm_medium": "social",
            "utm_campaign": "retargeting",
            "click_ids": {"fbclid": "fbclid-def"},
            "timestamp": "2025-01-14T12:00:00Z",
        },
        {
            "id": "evt-003",
            "client_id": "acme",
            "visitor_id": "visitor-laptop",
            "event_type": "form_submit",
            "timestamp": "2025-01-15T11:00:00Z",
        },
    ]


@pytest.fixture
def sample_conversion_data():
    """Conversion payload as received by the capture endpoint."""
    return {
        "id": "conv-001",
        "client_id": "acme",
        "visitor_id": "visitor-laptop",
        "conversion_type": "purchase",
        "value": 150.00,
        "currency": "USD",
        "timestamp": "2025-01-15T12:00:00Z",
    }
