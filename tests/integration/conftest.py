"""
Integration Test Configuration
==============================
Fixtures for adapter wiring tests with mocked external services.

HTTP collaborators run against httpx.MockTransport; the RPC client is
replaced by a MagicMock with canned solana-py style responses.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from tests.mocks.mock_rpc import value



# ============================================================================
# MOCKED HTTP SERVICES
# ============================================================================

@pytest.fixture
def http_recorder():
    """
    Factory for an AsyncClient whose responses come from `handler`.

    Usage:
        client, requests = http_recorder(lambda request: httpx.Response(200, json={}))
    """
    def factory(handler):
        requests = []

        def record(request):
            requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(record))
        return client, requests

    return factory

@pytest.fixture
def no_backoff(monkeypatch):
    from splforge.shared.infrastructure.jito_adapter import JitoAdapter

    monkeypatch.setattr(JitoAdapter, "RATE_LIMIT_BACKOFF", 0)
    monkeypatch.setattr(JitoAdapter, "ERROR_BACKOFF", 0)

# ============================================================================
# MOCKED RPC CLIENT
# ============================================================================

@pytest.fixture
def mock_rpc_client():
    client = MagicMock()
    client.get_latest_blockhash = AsyncMock()
    client.send_raw_transaction = AsyncMock()
    client.get_signature_statuses = AsyncMock()
    client.get_balance = AsyncMock(return_value=value(5_000_000))
    client.get_account_info = AsyncMock(return_value=value(None))
    client.get_token_account_balance = AsyncMock()
    client.get_token_supply = AsyncMock()
    client.get_minimum_balance_for_rent_exemption = AsyncMock(return_value=value(2_039_280))
    client.close = AsyncMock()
    return client
