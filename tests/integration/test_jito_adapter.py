"""
Jito Adapter Integration Tests
==============================
JSON-RPC bundle submission, status mapping and regional failover over
a mocked HTTP transport.
"""

import httpx
import pytest

from tests.mocks.mock_rpc import rpc_body


TIP_ACCOUNTS = ["96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5"]


def _adapter(client, network="mainnet-beta"):
    from splforge.shared.infrastructure.jito_adapter import JitoAdapter

    return JitoAdapter("ny", network, client=client, shuffle=False)


class TestBundles:
    @pytest.mark.asyncio
    async def test_send_bundle_returns_id(self, http_recorder):
        client, requests = http_recorder(lambda r: httpx.Response(200, json={"result": "b" * 64}))

        bundle_id = await _adapter(client).submit_bundle(["dHgx", "dHgy"])

        body = rpc_body(requests[0])
        assert bundle_id == "b" * 64
        assert body["method"] == "sendBundle"
        assert body["params"] == [["dHgx", "dHgy"], {"encoding": "base64"}]
        assert requests[0].url.host == "ny.mainnet.block-engine.jito.wtf"

    @pytest.mark.asyncio
    async def test_rejected_bundle_classified(self, http_recorder):
        from splforge.shared.execution.execution_result import ErrorKind, SubmissionError

        client, _ = http_recorder(lambda r: httpx.Response(
            200, json={"error": {"code": -32602, "message": "bundle contains an already processed transaction"}},
        ))

        with pytest.raises(SubmissionError) as exc:
            await _adapter(client).submit_bundle(["dHgx"])

        assert exc.value.kind == ErrorKind.BUNDLE_REJECTED

    @pytest.mark.asyncio
    async def test_no_leader_classified(self, http_recorder):
        from splforge.shared.execution.execution_result import ErrorKind, SubmissionError

        client, _ = http_recorder(lambda r: httpx.Response(
            200, json={"error": {"message": "no jito leader in the next slots"}},
        ))

        with pytest.raises(SubmissionError) as exc:
            await _adapter(client).submit_bundle(["dHgx"])

        assert exc.value.kind == ErrorKind.NO_ATOMIC_SLOT

    @pytest.mark.asyncio
    async def test_oversized_bundle_refused_locally(self, http_recorder):
        client, requests = http_recorder(lambda r: httpx.Response(200, json={"result": "x"}))

        with pytest.raises(ValueError):
            await _adapter(client).submit_bundle(["dHgx"] * 6)

        assert requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw, expected", [
        ("Landed", "landed"),
        ("Pending", "pending"),
        ("Failed", "failed"),
        ("Invalid", "invalid"),
    ])
    async def test_status_mapping(self, http_recorder, raw, expected):
        client, _ = http_recorder(lambda r: httpx.Response(
            200, json={"result": {"value": [{"bundle_id": "b1", "status": raw}]}},
        ))

        status = await _adapter(client).get_bundle_status("b1")

        assert status.value == expected

    @pytest.mark.asyncio
    async def test_unknown_bundle_is_pending(self, http_recorder):
        from splforge.shared.execution.execution_result import BundleStatus

        client, _ = http_recorder(lambda r: httpx.Response(200, json={"result": {"value": []}}))

        assert await _adapter(client).get_bundle_status("b1") == BundleStatus.PENDING


class TestAvailability:
    @pytest.mark.asyncio
    async def test_available_with_tip_accounts(self, http_recorder):
        client, requests = http_recorder(lambda r: httpx.Response(200, json={"result": TIP_ACCOUNTS}))
        adapter = _adapter(client)

        assert await adapter.is_available()
        assert await adapter.is_available()
        # tip accounts cached
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_devnet_never_available(self, http_recorder):
        client, requests = http_recorder(lambda r: httpx.Response(200, json={"result": TIP_ACCOUNTS}))

        assert not await _adapter(client, network="devnet").is_available()
        assert requests == []

    @pytest.mark.asyncio
    async def test_testnet_endpoints(self, http_recorder):
        client, requests = http_recorder(lambda r: httpx.Response(200, json={"result": TIP_ACCOUNTS}))

        await _adapter(client, network="testnet").get_tip_accounts()

        assert requests[0].url.host == "ny.testnet.block-engine.jito.wtf"


class TestFailover:
    @pytest.mark.asyncio
    async def test_rate_limited_region_rotates(self, http_recorder, no_backoff):
        def handler(request):
            if request.url.host.startswith("ny."):
                return httpx.Response(429)
            return httpx.Response(200, json={"result": "bundle_ok"})

        client, requests = http_recorder(handler)

        assert await _adapter(client).submit_bundle(["dHgx"]) == "bundle_ok"
        assert [r.url.host.split(".")[0] for r in requests] == ["ny", "mainnet"]

    @pytest.mark.asyncio
    async def test_transport_error_rotates(self, http_recorder, no_backoff):
        def handler(request):
            if request.url.host.startswith("ny."):
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"result": TIP_ACCOUNTS})

        client, _ = http_recorder(handler)

        assert await _adapter(client).get_tip_accounts() == TIP_ACCOUNTS

    @pytest.mark.asyncio
    async def test_all_regions_down_then_cooldown(self, http_recorder, no_backoff):
        from splforge.shared.execution.execution_result import ErrorKind, SubmissionError

        client, requests = http_recorder(lambda r: httpx.Response(503))
        adapter = _adapter(client)

        with pytest.raises(SubmissionError) as exc:
            await adapter.submit_bundle(["dHgx"])
        assert exc.value.kind == ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE
        assert len(requests) == 5

        # cooling down: refused without touching the network
        with pytest.raises(SubmissionError):
            await adapter.submit_bundle(["dHgx"])
        assert len(requests) == 5
        assert not await adapter.is_available()
