"""Idle-based reclamation of agents.

Every live agent has a RetentionRecord. A periodic trigger calls
``RetentionMonitor.check`` on each record; once an agent has been idle
for longer than IDLE_TIMEOUT_MS it is disconnected, its VM is returned
to the power state dictated by its post-build behavior, and the VM is
released back to the cloud.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from deskcloud.agent import AgentHandle, HttpAgentTransport
from deskcloud.cloud import Cloud
from deskcloud.vm.behavior import resolve_post_build_command
from deskcloud.vm.template import RetentionPolicy

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_MS = 2 * 60 * 1000
CHECK_INTERVAL_MS = 60 * 1000
RECHECK_SOON_MS = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class RetentionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RECLAIM_PENDING = "reclaim_pending"
    RECLAIMED = "reclaimed"


@dataclass
class RetentionRecord:
    agent: AgentHandle
    idle_start_ms: int
    policy: RetentionPolicy = RetentionPolicy.IDLE
    state: RetentionState = RetentionState.IDLE
    executing: bool = False
    tasks_completed: int = 0
    disconnected: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class RetentionMonitor:
    def __init__(
        self,
        cloud: Cloud,
        transport: HttpAgentTransport,
        clock: Callable[[], int] = _now_ms,
        idle_timeout_ms: int = IDLE_TIMEOUT_MS,
    ) -> None:
        self.cloud = cloud
        self.transport = transport
        self._clock = clock
        self._idle_timeout_ms = idle_timeout_ms
        self._records: dict[str, RetentionRecord] = {}
        self._connects: set[asyncio.Task] = set()

    @property
    def records(self) -> dict[str, RetentionRecord]:
        return self._records

    def get(self, agent_name: str) -> RetentionRecord | None:
        return self._records.get(agent_name)

    def start(self, agent: AgentHandle) -> RetentionRecord:
        """Track a newly created agent and connect it in the background."""
        logger.info("Starting agent %s on VM %s", agent.name, agent.vmid)
        policy = self.cloud.tracker[agent.instance_index].template.retention
        record = RetentionRecord(agent=agent, idle_start_ms=self._clock(), policy=policy)
        self._records[agent.name] = record

        task = asyncio.create_task(self._connect(agent))
        self._connects.add(task)
        task.add_done_callback(self._connects.discard)
        return record

    async def _connect(self, agent: AgentHandle) -> None:
        try:
            await self.transport.connect(agent)
        except Exception:
            # Left to the idle check to reclaim
            logger.exception("Failed to connect agent %s", agent.name)

    def mark_busy(self, agent_name: str) -> None:
        record = self._records.get(agent_name)
        if record is None:
            return
        record.executing = True
        record.state = RetentionState.BUSY

    def mark_idle(self, agent_name: str) -> None:
        record = self._records.get(agent_name)
        if record is None:
            return
        if record.executing:
            record.tasks_completed += 1
        record.executing = False
        record.idle_start_ms = self._clock()
        record.state = RetentionState.IDLE

    async def forget(self, agent_name: str) -> None:
        """Drop an agent that was torn down outside the monitor."""
        record = self._records.pop(agent_name, None)
        if record is not None:
            await self.cloud.release(record.agent.instance_index, agent_name)

    def _should_reclaim(self, record: RetentionRecord, idle_ms: int) -> bool:
        if record.executing:
            return False
        if record.policy is RetentionPolicy.RUN_ONCE and record.tasks_completed > 0:
            return True
        return idle_ms > self._idle_timeout_ms

    async def check(self, record: RetentionRecord) -> int:
        """Reclaim the agent if it has been idle too long.

        Never waits on the record's lock: if another check holds it this
        returns immediately. The return value is the suggested delay in
        milliseconds before the next check.
        """
        if record.lock.locked():
            return RECHECK_SOON_MS
        async with record.lock:
            if record.state is RetentionState.RECLAIMED:
                return CHECK_INTERVAL_MS
            idle_ms = self._clock() - record.idle_start_ms
            logger.debug(
                "Check agent %s: executing=%s idle=%dms", record.agent.name, record.executing, idle_ms
            )
            if self._should_reclaim(record, idle_ms):
                await self._reclaim(record)
            return CHECK_INTERVAL_MS

    async def _reclaim(self, record: RetentionRecord) -> None:
        agent = record.agent
        record.state = RetentionState.RECLAIM_PENDING
        try:
            if not record.disconnected:
                logger.info("Disconnecting idle agent %s", agent.name)
                await self.transport.disconnect(agent)
                record.disconnected = True
            await self._restore_vm(agent)
            await self.cloud.release(agent.instance_index, agent.name)
        except Exception:
            logger.exception("Failed to reclaim agent %s, will retry", agent.name)
            record.state = RetentionState.BUSY
            return
        record.state = RetentionState.RECLAIMED
        self._records.pop(agent.name, None)
        logger.info("Agent %s reclaimed", agent.name)

    async def _restore_vm(self, agent: AgentHandle) -> None:
        instance = self.cloud.tracker[agent.instance_index]
        command = resolve_post_build_command(
            instance.template.post_build_behavior, instance.last_power_state
        )
        if command is None:
            logger.info("Leaving VM %s running", instance.vmid)
            return
        connector = self.cloud.get_connector()
        if connector is None:
            raise RuntimeError(f"No connector to {command} VM {instance.vmid}")
        await connector.send_power_command(instance.vmid, command)

    async def check_all(self) -> int:
        """Run one check over every live record; returns the shortest suggested delay."""
        delays = await asyncio.gather(*(self.check(r) for r in list(self._records.values())))
        return min(delays, default=CHECK_INTERVAL_MS)
