"""
Tests for the relay JSON-RPC client.

Tests:
- Throttled call spacing across endpoints
- 429 backoff budget
- sendBundle encoding fallback
- getBundleStatuses result shapes
- Transport retry
"""

import random
import sys
from pathlib import Path

import aiohttp
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bundler.endpoints import Endpoint
from bundler.errors import RateLimitExhausted, RelayProtocolError, RelayTransportError
from bundler.rate_limiter import BackoffPolicy, MinIntervalThrottle
from bundler.relay_client import RelayClient, is_invalid_params_rejection
from bundler.status import StatusKind
from conftest import FakeClock, FakeResponse, FakeSession, rpc_error, rpc_result

E0 = Endpoint("https://frankfurt.mainnet.block-engine.jito.wtf/", "s3cret")
E1 = Endpoint("https://amsterdam.mainnet.block-engine.jito.wtf", "s3cret")
TXS = ["AAAA", "BBBB"]


def make_client(responder, clock: FakeClock, floor: float = 0.8) -> RelayClient:
    session = FakeSession(responder, clock=clock)
    throttle = MinIntervalThrottle(floor, clock=clock, sleep=clock.sleep)
    return RelayClient(throttle, session=session, rng=random.Random(7), sleep=clock.sleep)


def post_gaps(client: RelayClient):
    times = [p["at"] for p in client._session.posts]
    return [b - a for a, b in zip(times, times[1:])]


class TestCall:
    """Tests for the JSON-RPC call path."""

    @pytest.mark.asyncio
    async def test_request_shape(self, clock):
        """POSTs a JSON-RPC 2.0 envelope to /api/v1/bundles with the auth header."""
        client = make_client([rpc_result("ok")], clock)

        result = await client.call(E0, "getTipAccounts", [])

        post = client._session.posts[0]
        assert result == "ok"
        assert post["url"] == "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles"
        assert post["headers"]["x-jito-auth"] == "s3cret"
        assert post["headers"]["content-type"] == "application/json"
        assert post["payload"] == {"jsonrpc": "2.0", "id": 1, "method": "getTipAccounts", "params": []}

    @pytest.mark.asyncio
    async def test_spacing_is_global_across_endpoints(self, clock):
        """The floor applies even when consecutive calls hit different regions."""
        client = make_client(lambda url, payload: rpc_result("ok"), clock)

        for endpoint in (E0, E1, E0, E1):
            await client.call(endpoint, "getTipAccounts", [])

        assert all(gap >= 0.8 - 1e-9 for gap in post_gaps(client))
        assert client.calls_made == 4

    @pytest.mark.asyncio
    async def test_persistent_429_exhausts_after_four_posts(self, clock):
        """429 x4 -> three backoff retries, then RateLimitExhausted."""
        client = make_client([FakeResponse(429, "slow down") for _ in range(4)], clock)

        with pytest.raises(RateLimitExhausted) as exc_info:
            await client.call(E0, "sendBundle", [TXS])

        assert len(client._session.posts) == 4
        assert exc_info.value.http_status == 429
        assert exc_info.value.attempts == 4
        assert all(gap >= 0.8 - 1e-9 for gap in post_gaps(client))

    @pytest.mark.asyncio
    async def test_429_waits_grow_and_stay_bounded(self, clock):
        """Backoff components never shrink; each wait stays under cap + jitter."""
        policy = BackoffPolicy()
        client = make_client([FakeResponse(429) for _ in range(4)], clock)

        with pytest.raises(RateLimitExhausted):
            await client.call(E0, "sendBundle", [TXS])

        # throttle never had to sleep: every backoff already exceeds the floor
        waits = clock.sleeps
        assert len(waits) == policy.max_retries
        components = [max(0.8, 0.6), max(0.8, 0.6 * 1.7), max(0.8, 0.6 * 1.7 * 1.7)]
        for wait, component in zip(waits, components):
            assert component + 0.15 - 1e-9 <= wait <= component + 0.40 + 1e-9
            assert wait <= policy.upper_bound

    @pytest.mark.asyncio
    async def test_429_then_success(self, clock):
        client = make_client([FakeResponse(429), FakeResponse(429), rpc_result("bundle-1")], clock)

        assert await client.call(E0, "sendBundle", [TXS]) == "bundle-1"
        assert len(client._session.posts) == 3

    @pytest.mark.asyncio
    async def test_server_error_propagates_without_retry(self, clock):
        """A 500 surfaces immediately as RelayTransportError."""
        client = make_client([FakeResponse(500, "boom")], clock)

        with pytest.raises(RelayTransportError) as exc_info:
            await client.call(E0, "sendBundle", [TXS])

        assert exc_info.value.http_status == 500
        assert exc_info.value.body == "boom"
        assert len(client._session.posts) == 1

    @pytest.mark.asyncio
    async def test_envelope_error_is_protocol_error(self, clock):
        client = make_client([rpc_error(-32000, "bundle dropped")], clock)

        with pytest.raises(RelayProtocolError) as exc_info:
            await client.call(E0, "sendBundle", [TXS])

        assert exc_info.value.rpc_code == -32000
        assert exc_info.value.method == "sendBundle"

    @pytest.mark.asyncio
    async def test_non_json_body(self, clock):
        client = make_client([FakeResponse(200, "<html>")], clock)

        with pytest.raises(RelayTransportError):
            await client.call(E0, "sendBundle", [TXS])

    @pytest.mark.asyncio
    async def test_single_connection_hiccup_is_retried(self, clock):
        """One connection error is retried transparently."""
        client = make_client([aiohttp.ClientConnectionError("reset"), rpc_result("ok")], clock)

        assert await client.call(E0, "getTipAccounts", []) == "ok"
        assert len(client._session.posts) == 2
        assert all(gap >= 0.8 - 1e-9 for gap in post_gaps(client))

    @pytest.mark.asyncio
    async def test_repeated_connection_errors_surface(self, clock):
        client = make_client(
            [aiohttp.ClientConnectionError("reset"), aiohttp.ClientConnectionError("reset")], clock
        )

        with pytest.raises(RelayTransportError) as exc_info:
            await client.call(E0, "getTipAccounts", [])

        assert exc_info.value.http_status is None
        assert len(client._session.posts) == 2

    @pytest.mark.asyncio
    async def test_truncated_body_is_transport_error(self, clock):
        client = make_client([aiohttp.ClientPayloadError("truncated body"), rpc_result("late")], clock)

        with pytest.raises(RelayTransportError) as exc_info:
            await client.call(E0, "sendBundle", [TXS])

        assert "truncated body" in exc_info.value.body
        assert len(client._session.posts) == 1

    @pytest.mark.asyncio
    async def test_undecodable_body_is_transport_error(self, clock):
        bad_utf8 = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        client = make_client([bad_utf8], clock)

        with pytest.raises(RelayTransportError):
            await client.call(E0, "getBundleStatuses", [["b1"]])

        assert len(client._session.posts) == 1

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session_open(self, clock):
        client = make_client([], clock)
        await client.close()
        assert client._session.closed is False


class TestSendBundle:
    """Tests for sendBundle and its encoding fallback."""

    @pytest.mark.asyncio
    async def test_plain_shape_first(self, clock):
        client = make_client([rpc_result("bundle-1")], clock)

        bundle_id = await client.send_bundle(E0, TXS)

        assert bundle_id == "bundle-1"
        assert client._session.posts[0]["payload"]["params"] == [TXS]

    @pytest.mark.asyncio
    async def test_invalid_params_triggers_exactly_one_fallback(self, clock):
        """-32602 -> one retry with the base64 qualifier."""
        client = make_client([rpc_error(-32602, "invalid params"), rpc_result("bundle-2")], clock)

        bundle_id = await client.send_bundle(E0, TXS)

        params = [p["payload"]["params"] for p in client._session.posts]
        assert bundle_id == "bundle-2"
        assert params == [[TXS], [TXS, "base64"]]

    @pytest.mark.asyncio
    async def test_failed_fallback_is_not_retried_again(self, clock):
        client = make_client([rpc_error(-32602, "invalid params"), rpc_error(-32602, "invalid params")], clock)

        with pytest.raises(RelayProtocolError):
            await client.send_bundle(E0, TXS)

        assert len(client._session.posts) == 2

    @pytest.mark.asyncio
    async def test_plain_text_400_mentioning_params_falls_back(self, clock):
        client = make_client([FakeResponse(400, "Invalid param: expected encoding"), rpc_result("b")], clock)

        assert await client.send_bundle(E0, TXS) == "b"
        assert len(client._session.posts) == 2

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self, clock):
        client = make_client([rpc_error(-32000, "bundle contains an already processed transaction")], clock)

        with pytest.raises(RelayProtocolError):
            await client.send_bundle(E0, TXS)

        assert len(client._session.posts) == 1

    @pytest.mark.asyncio
    async def test_missing_bundle_id(self, clock):
        client = make_client([rpc_result(None)], clock)

        with pytest.raises(RelayProtocolError):
            await client.send_bundle(E0, TXS)


class TestFallbackPredicate:
    """Tests for is_invalid_params_rejection."""

    def test_structured_code_in_envelope(self):
        assert is_invalid_params_rejection(RelayProtocolError("x", rpc_code=-32602))
        assert not is_invalid_params_rejection(RelayProtocolError("x", rpc_code=-32000))

    def test_structured_code_in_400_body_wins_over_text(self):
        """A 400 body with a different code is not a fallback, even if it says "params"."""
        body = '{"jsonrpc":"2.0","error":{"code":-32600,"message":"bad params"}}'
        assert not is_invalid_params_rejection(RelayTransportError("x", http_status=400, body=body))

        body = '{"jsonrpc":"2.0","error":{"code":-32602,"message":"whatever"}}'
        assert is_invalid_params_rejection(RelayTransportError("x", http_status=400, body=body))

    def test_text_only_for_400(self):
        assert is_invalid_params_rejection(RelayTransportError("x", http_status=400, body="missing params"))
        assert not is_invalid_params_rejection(RelayTransportError("x", http_status=500, body="missing params"))

    def test_rate_limit_never_falls_back(self):
        assert not is_invalid_params_rejection(RateLimitExhausted("x", attempts=4))


class TestGetBundleStatuses:
    """Tests for getBundleStatuses parsing."""

    @pytest.mark.asyncio
    async def test_context_value_shape(self, clock):
        result = {
            "context": {"slot": 1},
            "value": [{"bundle_id": "b1", "confirmation_status": "confirmed", "slot": 99}],
        }
        client = make_client([rpc_result(result)], clock)

        statuses = await client.get_bundle_statuses(E0, ["b1"])

        assert client._session.posts[0]["payload"]["params"] == [["b1"]]
        assert statuses[0].kind is StatusKind.CONFIRMED
        assert statuses[0].slot == 99

    @pytest.mark.asyncio
    async def test_bare_list_shape(self, clock):
        client = make_client([rpc_result([{"bundle_id": "b1", "confirmation_status": "finalized"}])], clock)

        statuses = await client.get_bundle_statuses(E0, ["b1"])

        assert statuses[0].kind is StatusKind.FINALIZED

    @pytest.mark.asyncio
    async def test_missing_entry_is_unknown(self, clock):
        client = make_client([rpc_result({"context": {"slot": 1}, "value": [None]})], clock)

        statuses = await client.get_bundle_statuses(E0, ["b1"])

        assert statuses[0].bundle_id == "b1"
        assert statuses[0].kind is StatusKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_entry_for_other_bundle_is_not_attributed(self, clock):
        client = make_client([rpc_result([{"bundle_id": "other", "confirmation_status": "confirmed"}])], clock)

        statuses = await client.get_bundle_statuses(E0, ["b1"])

        assert statuses[0].kind is StatusKind.UNKNOWN


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
