"""Provisioning engine: turns excess workload into started VMs and planned agents.

The scan is first-fit over the configured VMs in declaration order. It
runs under a single lock per cloud so that two concurrent provision
calls can never claim the same VM. Agent bring-up on a started VM runs
as a separate task and holds no lock.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from deskcloud.agent import AgentHandle, HttpAgentTransport
from deskcloud.config import CloudConfig
from deskcloud.connector import Connector
from deskcloud.labels import LabelExpressionError, labels_match
from deskcloud.vm.clone import create_linked_clone
from deskcloud.vm.prlctl import PrlctlTransport
from deskcloud.vm.state import VMStateTracker
from deskcloud.vm.template import TemplateRegistry

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[CloudConfig], Connector]
LabelMatcher = Callable[[str | None, str], bool]


def default_connector_factory(config: CloudConfig) -> Connector:
    return Connector(
        transport=PrlctlTransport(ssh_host=config.ssh_host),
        agents=HttpAgentTransport(),
        name=f"{config.name} host agent",
        labels=config.label_string,
        remote_fs=config.remote_fs,
        use_as_builder=config.use_connector_as_builder,
    )


@dataclass
class PlannedAgent:
    """An agent that will exist once ``future`` completes."""

    name: str
    instance_index: int
    future: asyncio.Task = field(repr=False)
    executors: int = 1


class Cloud:
    """A pool of Parallels VMs handed out as build agents."""

    def __init__(
        self,
        config: CloudConfig,
        connector_factory: ConnectorFactory = default_connector_factory,
        matcher: LabelMatcher = labels_match,
    ) -> None:
        self.config = config
        self.registry = TemplateRegistry(config.vms)
        self.tracker = VMStateTracker(self.registry)
        self._connector_factory = connector_factory
        self._connector: Connector | None = None
        self._matcher = matcher
        self._lock = asyncio.Lock()
        self._bring_ups: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.config.name

    # ── Connector ─────────────────────────────────────────────────

    def get_connector(self) -> Connector | None:
        """Return the connector, creating it on first use."""
        if self._connector is None:
            try:
                self._connector = self._connector_factory(self.config)
            except Exception:
                logger.exception("Could not create connector for cloud %s", self.name)
                return None
            logger.info("Created connector %s", self._connector.name)
        return self._connector

    def connector_terminated(self) -> None:
        logger.info("Connector for cloud %s terminated", self.name)
        self._connector = None

    # ── Provisioning ──────────────────────────────────────────────

    def _matches(self, label: str | None, labels: str) -> bool:
        try:
            return self._matcher(label, labels)
        except LabelExpressionError:
            logger.warning("Invalid label expression %r", label)
            return False

    def _at_ceiling(self) -> bool:
        limit = self.config.max_concurrent_vms
        return limit is not None and self.tracker.provisioned_count() >= limit

    def can_provision(self, label: str | None) -> bool:
        if label is None:
            return False
        return any(self._matches(label, t.labels) for t in self.registry)

    async def provision(self, label: str | None, excess_workload: int) -> list[PlannedAgent]:
        """Start up to ``excess_workload`` VMs matching ``label``.

        Returns one PlannedAgent per started VM. An unreachable connector
        or a lack of eligible VMs yields an empty list; callers retry on
        their own schedule.
        """
        if excess_workload < 0:
            raise ValueError("excess_workload must be >= 0")
        planned: list[PlannedAgent] = []
        if excess_workload == 0:
            return planned

        logger.info("Going to provision %d executors for label %r", excess_workload, label)
        connector = self.get_connector()
        if connector is None or not await connector.is_reachable():
            return planned

        async with self._lock:
            for index, entry in list(self.tracker.live()):
                if excess_workload == 0:
                    break
                if self._at_ceiling():
                    logger.info(
                        "Cloud %s at its limit of %d concurrent VMs",
                        self.name, self.config.max_concurrent_vms,
                    )
                    break
                # Clones are single use; only templates are candidates
                if entry.is_linked_clone or entry.provisioned:
                    continue
                if not self._matches(label, entry.template.labels):
                    continue

                target = index
                if self.config.use_linked_clones:
                    target = self.tracker.add_clone(create_linked_clone(entry.template))

                instance = self.tracker[target]
                try:
                    started = await connector.start_vm(instance)
                except Exception:
                    logger.exception("Unexpected error starting VM %s", instance.vmid)
                    started = None
                if started is None:
                    logger.warning("Could not start VM %s, skipping", instance.vmid)
                    if target != index:
                        self.tracker.mark_released(target)
                    continue

                agent_name = f"{entry.vmid}-{uuid.uuid4().hex[:8]}"
                self.tracker.record_power_state(target, started.previous_state)
                self.tracker.set_host(target, started.host)
                self.tracker.mark_provisioned(target, agent_name)
                excess_workload -= 1

                task = asyncio.create_task(
                    self._bring_up(connector, target, agent_name, started.host)
                )
                self._bring_ups.add(task)
                task.add_done_callback(self._bring_ups.discard)
                planned.append(PlannedAgent(name=agent_name, instance_index=target, future=task))
                logger.info("Planned agent %s on VM %s", agent_name, instance.vmid)

        return planned

    async def _bring_up(
        self,
        connector: Connector,
        index: int,
        agent_name: str,
        host: str,
    ) -> AgentHandle:
        try:
            return await connector.create_agent_on(self.tracker[index], index, agent_name, host)
        except Exception:
            logger.exception("Bring-up of agent %s failed, releasing its VM", agent_name)
            await self.release(index, agent_name)
            raise

    async def release(self, index: int, agent_name: str | None = None) -> None:
        """Return a VM to the pool so the next scan may provision it again."""
        async with self._lock:
            entry = self.tracker[index]
            if agent_name is not None and entry.agent_name != agent_name:
                logger.warning(
                    "Ignoring release of VM %s for stale agent %s", entry.vmid, agent_name
                )
                return
            self.tracker.mark_released(index)
        logger.info("VM %s released, capacity freed on cloud %s", entry.vmid, self.name)

    def status(self) -> dict:
        connector = self._connector
        return {
            "name": self.name,
            "max_concurrent_vms": self.config.max_concurrent_vms,
            "use_linked_clones": self.config.use_linked_clones,
            "provisioned": self.tracker.provisioned_count(),
            "connector": connector.name if connector else None,
            "vms": self.tracker.snapshot(),
        }
