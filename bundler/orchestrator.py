"""
Submission Orchestrator
=======================

Owns the retry loop for one atomic bundle:

    IDLE -> BUILDING -> SUBMITTING -> POLLING -> LANDED
                 ^                        |
                 +------- RETRY <---------+--> EXHAUSTED

Each attempt goes to the next endpoint in round-robin order with a fresh
blockhash, so each attempt has new signatures and a new bundle id. Bundle ids
from earlier attempts are abandoned, never polled again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from bundler.builder import Bundle, PreparedBundle
from bundler.chain import SolanaChainClient
from bundler.endpoints import Endpoint, EndpointPool
from bundler.errors import (
    BundleFailed,
    BundlerError,
    BundleTimeout,
    ChainError,
    RelayError,
    RetriesExhausted,
)
from bundler.logging_config import AttemptContext
from bundler.relay_client import RelayClient
from bundler.status import BundleStatus

logger = logging.getLogger(__name__)


class RunState(Enum):
    IDLE = "idle"
    BUILDING = "building"
    SUBMITTING = "submitting"
    POLLING = "polling"
    RETRY = "retry"
    LANDED = "landed"
    EXHAUSTED = "exhausted"


ALLOWED_TRANSITIONS = {
    RunState.IDLE: {RunState.BUILDING},
    RunState.BUILDING: {RunState.SUBMITTING, RunState.RETRY},
    RunState.SUBMITTING: {RunState.POLLING, RunState.RETRY},
    RunState.POLLING: {RunState.LANDED, RunState.RETRY},
    RunState.RETRY: {RunState.BUILDING, RunState.EXHAUSTED},
    RunState.LANDED: set(),
    RunState.EXHAUSTED: set(),
}


class OutcomeKind(Enum):
    """How one attempt ended."""
    LANDED = "landed"
    BUILD_ERROR = "build_error"
    SUBMIT_ERROR = "submit_error"
    POLL_ERROR = "poll_error"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class AttemptOutcome:
    """Result of one attempt."""
    attempt: int
    endpoint: str
    kind: OutcomeKind
    bundle_id: Optional[str] = None
    status: Optional[BundleStatus] = None
    error: Optional[BundlerError] = None
    polls: int = 0
    elapsed: float = 0.0

    @property
    def landed(self) -> bool:
        return self.kind is OutcomeKind.LANDED

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "endpoint": self.endpoint,
            "kind": self.kind.value,
            "bundle_id": self.bundle_id,
            "status": self.status.kind.value if self.status else None,
            "error": self.error.to_dict() if self.error else None,
            "polls": self.polls,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class RunResult:
    """Successful run: the landed bundle and every attempt that led to it."""
    bundle_id: str
    status: BundleStatus
    attempts: List[AttemptOutcome] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 6
    poll_timeout: float = 12.0
    poll_interval: float = 0.9
    min_call_interval: float = 0.8

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def effective_poll_interval(self) -> float:
        """Polling never outpaces the relay call floor."""
        return max(self.poll_interval, self.min_call_interval)


class SubmissionOrchestrator:
    """
    Drives attempts until the bundle lands or the budget runs out.

    Args:
        relay: Relay client shared by every attempt.
        pool: Endpoints, picked round-robin by attempt index.
        chain: Source of fresh blockhashes.
        prepared: Both slots, assembled once for the run.
        policy: Attempt budget and poll timing.
        clock: Monotonic clock (injectable for tests).
        sleep: Async sleep (injectable for tests).
    """

    def __init__(
        self,
        relay: RelayClient,
        pool: EndpointPool,
        chain: SolanaChainClient,
        prepared: PreparedBundle,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.relay = relay
        self.pool = pool
        self.chain = chain
        self.prepared = prepared
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self.state = RunState.IDLE
        self.transitions: List[Tuple[RunState, RunState]] = []
        self.outcomes: List[AttemptOutcome] = []

    def _transition(self, new_state: RunState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        logger.debug(f"State {self.state.value} -> {new_state.value}")
        self.transitions.append((self.state, new_state))
        self.state = new_state

    async def run(self) -> RunResult:
        """Run attempts until one lands.

        Raises:
            RetriesExhausted: every attempt ended without a landed bundle.
        """
        if self.state is not RunState.IDLE:
            raise RuntimeError("orchestrator instances are single-use")

        started = self._clock()
        budget = self.policy.max_attempts
        self._transition(RunState.BUILDING)

        for attempt in range(budget):
            endpoint = self.pool.pick_endpoint(attempt)
            with AttemptContext(attempt + 1, endpoint.region) as ctx:
                logger.info(f"[try {attempt + 1}/{budget}] sendBundle -> {endpoint.url}")
                outcome = await self._attempt(attempt, endpoint, ctx)
                self.outcomes.append(outcome)

                if outcome.landed:
                    self._transition(RunState.LANDED)
                    logger.info(f"Bundle landed: {outcome.status.describe()}")
                    return RunResult(
                        bundle_id=outcome.bundle_id,
                        status=outcome.status,
                        attempts=list(self.outcomes),
                        elapsed=self._clock() - started,
                    )

                self._transition(RunState.RETRY)
                if attempt + 1 < budget:
                    logger.info(f"Attempt ended {outcome.kind.value}, retrying on next endpoint")
                    self._transition(RunState.BUILDING)

        self._transition(RunState.EXHAUSTED)
        logger.error(f"Failed to land bundle after {budget} attempts")
        raise RetriesExhausted(self.outcomes)

    async def _attempt(self, attempt: int, endpoint: Endpoint, ctx: AttemptContext) -> AttemptOutcome:
        started = self._clock()

        def finish(kind: OutcomeKind, **kwargs: Any) -> AttemptOutcome:
            return AttemptOutcome(
                attempt=attempt,
                endpoint=endpoint.url,
                kind=kind,
                elapsed=self._clock() - started,
                **kwargs,
            )

        # BUILDING: fresh blockhash, fresh signatures
        try:
            blockhash = await self.chain.get_latest_token()
            bundle: Bundle = self.prepared.refresh(blockhash)
        except ChainError as exc:
            logger.warning(f"Could not refresh bundle: {exc}")
            return finish(OutcomeKind.BUILD_ERROR, error=exc)
        logger.debug(f"Signed against {blockhash}: {[str(s) for s in bundle.signatures]}")

        self._transition(RunState.SUBMITTING)
        try:
            bundle_id = await self.relay.send_bundle(endpoint, bundle.encoded)
        except RelayError as exc:
            logger.warning(f"sendBundle error: {exc}")
            return finish(OutcomeKind.SUBMIT_ERROR, error=exc)
        ctx.set_bundle_id(bundle_id)
        logger.info(f"bundle_id: {bundle_id}")

        self._transition(RunState.POLLING)
        kind, status, error, polls = await self._poll(endpoint, bundle_id)
        return finish(kind, bundle_id=bundle_id, status=status, error=error, polls=polls)

    async def _poll(
        self, endpoint: Endpoint, bundle_id: str
    ) -> Tuple[OutcomeKind, Optional[BundleStatus], Optional[BundlerError], int]:
        """Poll one bundle id until it is terminal or the window closes."""
        interval = self.policy.effective_poll_interval
        started = self._clock()
        polls = 0
        last_status: Optional[BundleStatus] = None

        while self._clock() - started < self.policy.poll_timeout:
            try:
                statuses = await self.relay.get_bundle_statuses(endpoint, [bundle_id])
            except RelayError as exc:
                logger.warning(f"getBundleStatuses error: {exc}")
                return OutcomeKind.POLL_ERROR, last_status, exc, polls
            polls += 1

            status = statuses[0] if statuses else BundleStatus.from_payload(bundle_id, None)
            last_status = status
            if status.is_landed:
                return OutcomeKind.LANDED, status, None, polls
            if status.is_failed:
                logger.warning(f"Bundle error: {status.describe()}")
                return OutcomeKind.FAILED, status, BundleFailed(bundle_id, status.reason), polls

            logger.debug(f"Status {status.kind.value}, next poll in {interval * 1000:.0f}ms")
            await self._sleep(interval)

        waited = self._clock() - started
        logger.info(f"Not landed after {waited:.1f}s, abandoning {bundle_id}")
        return OutcomeKind.TIMEOUT, last_status, BundleTimeout(bundle_id, waited), polls
