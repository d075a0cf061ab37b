"""
Relay Bundle Client
===================

Throttled JSON-RPC client for the Jito block engine bundle API.

Handles:
- Global minimum call spacing (shared throttle)
- Bounded backoff on HTTP 429
- One transparent retry on connection-level hiccups
- ``sendBundle`` parameter-shape fallback
- ``getBundleStatuses`` parsing

Usage:
    from bundler.relay_client import RelayClient
    from bundler.rate_limiter import MinIntervalThrottle

    async with RelayClient(MinIntervalThrottle(0.8)) as relay:
        bundle_id = await relay.send_bundle(endpoint, [tx1_b64, tx2_b64])
        statuses = await relay.get_bundle_statuses(endpoint, [bundle_id])
"""

import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from bundler.endpoints import Endpoint
from bundler.errors import (
    RateLimitExhausted,
    RelayError,
    RelayProtocolError,
    RelayTransportError,
)
from bundler.rate_limiter import BackoffPolicy, MinIntervalThrottle
from bundler.status import BundleStatus

logger = logging.getLogger(__name__)

AUTH_HEADER = "x-jito-auth"
JSONRPC_INVALID_PARAMS = -32602
ENCODING_QUALIFIER = "base64"


def _rpc_code_from_body(body: str) -> Optional[int]:
    """Pull a JSON-RPC error code out of an HTTP error body, if it has one."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("code"), int):
        return error["code"]
    return None


def is_invalid_params_rejection(error: Exception) -> bool:
    """Decide whether ``sendBundle`` should retry with the encoding qualifier.

    Structured codes win: a JSON-RPC ``-32602`` in the envelope or in a 400
    body. Only a 400 whose body carries no code at all falls back to looking
    for "param" in the text.
    """
    if isinstance(error, RelayProtocolError):
        return error.rpc_code == JSONRPC_INVALID_PARAMS
    if isinstance(error, RateLimitExhausted):
        return False
    if isinstance(error, RelayTransportError) and error.http_status == 400:
        code = _rpc_code_from_body(error.body)
        if code is not None:
            return code == JSONRPC_INVALID_PARAMS
        # last resort: plain-text 400 bodies
        return "param" in (error.body or "").lower()
    return False


class RelayClient:
    """
    Low-level client for the block engine bundle API.

    One instance serves every endpoint; the throttle it owns is the single
    pacing point for all relay traffic in the process.
    """

    def __init__(
        self,
        throttle: MinIntervalThrottle,
        backoff: Optional[BackoffPolicy] = None,
        *,
        timeout_seconds: float = 10.0,
        transport_retries: int = 1,
        session: Optional[aiohttp.ClientSession] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.throttle = throttle
        self.backoff = backoff or BackoffPolicy()
        self.timeout_seconds = timeout_seconds
        self.transport_retries = transport_retries
        self._session = session
        self._owns_session = session is None
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.calls_made = 0

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Tuple[int, str]:
        session = await self._get_session()
        async with session.post(url, json=payload, headers=headers) as response:
            body = await response.text()
            return response.status, body

    async def call(self, endpoint: Endpoint, method: str, params: List[Any]) -> Any:
        """
        Make one JSON-RPC call against ``endpoint``.

        Raises:
            RateLimitExhausted: 429 persisted past the backoff budget.
            RelayTransportError: any other non-2xx, an unreadable body, or the
                connection failed twice.
            RelayProtocolError: the envelope carried an ``error`` object.
        """
        url = endpoint.bundles_url
        headers = {"content-type": "application/json", AUTH_HEADER: endpoint.auth_secret}
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        rate_limited = 0
        transport_failures = 0
        delay = self.backoff.base_delay

        while True:
            await self.throttle.wait()
            self.calls_made += 1

            try:
                status, body = await self._post(url, payload, headers)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
                transport_failures += 1
                if transport_failures > self.transport_retries:
                    raise RelayTransportError(
                        f"Relay {method} transport failure: {exc!r}",
                        body=str(exc),
                        endpoint=endpoint.url,
                        method=method,
                    ) from exc
                logger.warning(
                    f"[{method}] transport error on {endpoint.region}: {exc!r} "
                    f"(retry {transport_failures}/{self.transport_retries})"
                )
                continue
            except (aiohttp.ClientError, UnicodeDecodeError) as exc:
                # Truncated or undecodable bodies are not retried in place
                raise RelayTransportError(
                    f"Relay {method} unreadable response: {exc!r}",
                    body=str(exc),
                    endpoint=endpoint.url,
                    method=method,
                ) from exc

            if status == 429:
                rate_limited += 1
                if rate_limited > self.backoff.max_retries:
                    raise RateLimitExhausted(
                        f"Relay {method} HTTP 429 (max backoff reached)",
                        attempts=rate_limited,
                        endpoint=endpoint.url,
                        method=method,
                    )
                wait = self.backoff.retry_wait(delay, self.throttle.min_interval, self._rng)
                logger.warning(
                    f"[{method}] 429 -> backoff {wait * 1000:.0f}ms "
                    f"(retry {rate_limited}/{self.backoff.max_retries}, {endpoint.region})"
                )
                await self._sleep(wait)
                delay = self.backoff.grow(delay)
                continue

            if not 200 <= status < 300:
                raise RelayTransportError(
                    f"Relay {method} HTTP {status}" + (f" - {body}" if body else ""),
                    http_status=status,
                    body=body,
                    endpoint=endpoint.url,
                    method=method,
                )

            try:
                envelope = json.loads(body)
            except ValueError as exc:
                raise RelayTransportError(
                    f"Relay {method} returned non-JSON body",
                    http_status=status,
                    body=body,
                    endpoint=endpoint.url,
                    method=method,
                ) from exc

            error = envelope.get("error") if isinstance(envelope, dict) else None
            if error:
                rpc_code = error.get("code") if isinstance(error, dict) else None
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                raise RelayProtocolError(
                    f"Relay {method} error {rpc_code}: {message}",
                    rpc_code=rpc_code,
                    data=error.get("data") if isinstance(error, dict) else None,
                    endpoint=endpoint.url,
                    method=method,
                )
            return envelope.get("result") if isinstance(envelope, dict) else None

    async def send_bundle(self, endpoint: Endpoint, transactions: Sequence[str]) -> str:
        """
        Submit base64 transactions as one bundle and return the bundle id.

        Tries the bare ``[[txs]]`` shape first; an invalid-params rejection
        gets exactly one retry as ``[[txs], "base64"]``.
        """
        encoded = list(transactions)
        try:
            result = await self.call(endpoint, "sendBundle", [encoded])
        except RelayError as exc:
            if not is_invalid_params_rejection(exc):
                raise
            logger.info(f"sendBundle fallback -> with encoding param ({endpoint.region})")
            result = await self.call(endpoint, "sendBundle", [encoded, ENCODING_QUALIFIER])

        if not isinstance(result, str) or not result:
            raise RelayProtocolError(
                f"sendBundle returned no bundle id: {result!r}",
                endpoint=endpoint.url,
                method="sendBundle",
            )
        return result

    async def get_bundle_statuses(self, endpoint: Endpoint, bundle_ids: Sequence[str]) -> List[BundleStatus]:
        """Fetch statuses, one entry per requested id in request order."""
        ids = list(bundle_ids)
        result = await self.call(endpoint, "getBundleStatuses", [ids])

        if isinstance(result, dict) and "value" in result:
            entries = result.get("value") or []
        elif isinstance(result, list):
            entries = result
        elif result is None:
            entries = []
        else:
            entries = [result]

        by_id = {
            entry.get("bundle_id"): entry
            for entry in entries
            if isinstance(entry, dict) and entry.get("bundle_id")
        }
        statuses = []
        for index, bundle_id in enumerate(ids):
            entry = by_id.get(bundle_id)
            if entry is None and index < len(entries):
                candidate = entries[index]
                # positional match only for entries that do not name another bundle
                if not (isinstance(candidate, dict) and candidate.get("bundle_id")):
                    entry = candidate
            statuses.append(BundleStatus.from_payload(bundle_id, entry))
        return statuses
