"""
Heartbeat and health aggregation for a SyncTarget.

The StatusReporter probes the physical cluster every heartbeat period and
folds the result, together with the synchronizers' failure counts, into
a StatusProposal. Proposals are handed to a callback (the
LifecycleManager); the reporter never writes the SyncTarget itself.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cluster.base import ClusterClient
from .config import SyncerSettings
from .errors import SyncerError
from .models import (
    HEARTBEAT_READY_CONDITION,
    READY_CONDITION,
    SYNCER_READY_CONDITION,
    Condition,
    ConditionStatus,
    HeartbeatRecord,
    utc_now,
)
from .self_healing import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class StatusProposal:
    """Condition values the reporter wants committed on the SyncTarget."""
    conditions: List[Condition] = field(default_factory=list)
    last_heartbeat: Optional[datetime] = None
    available: bool = True
    sequence: int = 0

    def condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


ProposalHandler = Callable[[StatusProposal], Awaitable[None]]


class StatusReporter:
    """
    Periodic heartbeat against the physical cluster.

    The heartbeat is considered lost only after
    ``heartbeat_failure_threshold`` consecutive probe failures; a single
    failed probe is counted but does not change the proposed conditions.

    Args:
        physical: Client for the physical cluster
        settings: Syncer settings (period, thresholds, timeout)
        failed_count: Returns the number of degraded or permanently failed keys
        on_proposal: Coroutine receiving each StatusProposal
        clock: Returns the current time
    """

    def __init__(
        self,
        physical: ClusterClient,
        settings: SyncerSettings,
        failed_count: Callable[[], int],
        on_proposal: ProposalHandler,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.physical = physical
        self.settings = settings
        self.failed_count = failed_count
        self.on_proposal = on_proposal
        self.clock = clock
        self.record = HeartbeatRecord()
        self.healthy = True
        self.last_proposal: Optional[StatusProposal] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> StatusProposal:
        """Run one heartbeat: probe, update counters, propose conditions."""
        now = self.clock()
        self.record.sequence += 1
        error: Optional[SyncerError] = None
        try:
            await call_with_timeout(self.physical.probe(), self.settings.request_timeout_seconds, "heartbeat probe")
        except SyncerError as e:
            error = e

        if error is None:
            if not self.healthy:
                logger.info(f"Heartbeat recovered after {self.record.consecutive_failures} failures")
            self.record.consecutive_failures = 0
            self.record.last_heartbeat = now
            self.healthy = True
        else:
            self.record.error_count += 1
            self.record.consecutive_failures += 1
            logger.warning(
                f"Heartbeat {self.record.sequence} failed "
                f"({self.record.consecutive_failures}/{self.settings.heartbeat_failure_threshold}): {error}"
            )
            if self.record.consecutive_failures >= self.settings.heartbeat_failure_threshold:
                self.healthy = False

        proposal = self._propose(error)
        self.last_proposal = proposal
        await self.on_proposal(proposal)
        return proposal

    def _propose(self, error: Optional[SyncerError]) -> StatusProposal:
        if self.healthy:
            heartbeat = Condition(HEARTBEAT_READY_CONDITION, ConditionStatus.TRUE, "HeartbeatSucceeded")
        else:
            heartbeat = Condition(
                HEARTBEAT_READY_CONDITION,
                ConditionStatus.FALSE,
                "HeartbeatFailed",
                f"{self.record.consecutive_failures} consecutive heartbeat failures: {error}",
            )

        failed = self.failed_count()
        if failed <= self.settings.permanent_failure_threshold:
            syncer = Condition(SYNCER_READY_CONDITION, ConditionStatus.TRUE, "SynchronizersHealthy")
        else:
            syncer = Condition(
                SYNCER_READY_CONDITION,
                ConditionStatus.FALSE,
                "SynchronizerFailures",
                f"{failed} resources degraded or permanently failed",
            )

        if not heartbeat.is_true:
            ready = Condition(READY_CONDITION, ConditionStatus.FALSE, "HeartbeatFailed", heartbeat.message)
        elif not syncer.is_true:
            ready = Condition(READY_CONDITION, ConditionStatus.FALSE, "SyncerNotReady", syncer.message)
        else:
            ready = Condition(READY_CONDITION, ConditionStatus.TRUE, "Ready")

        return StatusProposal(
            conditions=[ready, syncer, heartbeat],
            last_heartbeat=self.record.last_heartbeat,
            available=self.healthy,
            sequence=self.record.sequence,
        )

    async def start(self, heartbeat_period: Optional[float] = None) -> None:
        if self._task is None or self._task.done():
            period = heartbeat_period or self.settings.heartbeat_period_seconds
            self._task = asyncio.get_running_loop().create_task(self._run(period), name="status-reporter")

    async def _run(self, period: float) -> None:
        while True:
            try:
                await self.tick()
            except SyncerError as e:
                # Committing the proposal failed; the next tick proposes again
                logger.warning(f"Could not commit status proposal: {e}")
            await asyncio.sleep(period)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self.record.to_dict(),
            "healthy": self.healthy,
            "running": self._task is not None and not self._task.done(),
        }


__all__ = ["StatusReporter", "StatusProposal", "ProposalHandler"]
