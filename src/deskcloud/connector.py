"""The connector: an always-on control instance on the Parallels host.

All VM operations go through the connector. The cloud creates it lazily
on first use and drops it when it terminates; while it cannot reach the
host no VMs are provisioned.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from deskcloud.agent import AgentHandle, HttpAgentTransport
from deskcloud.vm.behavior import resolve_post_build_command
from deskcloud.vm.prlctl import PrlctlError, PrlctlTransport
from deskcloud.vm.state import VMInstance
from deskcloud.vm.template import PostBuildBehavior, VMState, parse_vm_state

logger = logging.getLogger(__name__)

# prlctl reports "-" until the guest tools publish an address
_NO_IP = {"", "-"}


@dataclass(frozen=True)
class StartedVM:
    previous_state: VMState | None
    host: str


class Connector:
    def __init__(
        self,
        transport: PrlctlTransport,
        agents: HttpAgentTransport,
        name: str,
        labels: str = "",
        remote_fs: str = "",
        use_as_builder: bool = False,
        ip_poll_interval: float = 1.0,
    ) -> None:
        self.transport = transport
        self.agents = agents
        self.name = name
        self.labels = labels
        self.remote_fs = remote_fs
        self.use_as_builder = use_as_builder
        self._ip_poll_interval = ip_poll_interval

    async def is_reachable(self) -> bool:
        try:
            await self.transport.version()
        except (PrlctlError, OSError) as e:
            logger.warning("Connector %s offline: %s", self.name, e)
            return False
        return True

    async def start_vm(self, instance: VMInstance) -> StartedVM | None:
        """Boot the VM backing ``instance``; None if it could not be started.

        Linked clones are created on the host first. The power state found
        before starting is returned so it can be restored on release.
        """
        vmid = instance.vmid
        previous: VMState | None = None
        powered_on = False
        try:
            if instance.is_linked_clone:
                await self.transport.clone_linked(instance.template.parent_vmid or "", vmid)

            info = await self.transport.vm_info(vmid)
            if info is None:
                logger.error("VM %s not found on host", vmid)
                return None
            previous = parse_vm_state(info.get("status"))

            if previous is VMState.PAUSED:
                await self.transport.power(vmid, "resume")
                powered_on = True
            elif previous is not VMState.RUNNING:
                await self.transport.start(vmid)
                powered_on = True

            host = await self._wait_for_ip(vmid, instance.template.launch.health_timeout)
        except (PrlctlError, TimeoutError):
            logger.exception("Failed to start VM %s", vmid)
            if powered_on:
                await self._restore(vmid, previous)
            return None
        return StartedVM(previous_state=previous, host=host)

    async def create_agent_on(self, instance: VMInstance, index: int, agent_name: str, host: str) -> AgentHandle:
        launch = instance.template.launch.with_host(host)
        await self.agents.wait_ready(launch.base_url, launch.health_timeout)
        logger.info("Agent %s is up on VM %s (%s)", agent_name, instance.vmid, launch.base_url)
        return AgentHandle(
            name=agent_name,
            vmid=instance.vmid,
            instance_index=index,
            url=launch.base_url,
            remote_fs=instance.template.remote_fs,
        )

    async def send_power_command(self, vmid: str, command: str) -> None:
        await self.transport.power(vmid, command)

    async def _restore(self, vmid: str, previous: VMState | None) -> None:
        """Put a VM that failed to come up back into the state it was found in."""
        command = resolve_post_build_command(PostBuildBehavior.RETURN_PREV_STATE, previous)
        if command is None:
            return
        try:
            await self.transport.power(vmid, command)
        except PrlctlError:
            logger.exception("Failed to %s VM %s after a failed start", command, vmid)

    async def _wait_for_ip(self, vmid: str, timeout: int) -> str:
        attempts = max(1, int(timeout / self._ip_poll_interval))
        for _ in range(attempts):
            info = await self.transport.vm_info(vmid)
            ip = (info or {}).get("ip_configured", "")
            if ip not in _NO_IP:
                return ip
            await asyncio.sleep(self._ip_poll_interval)
        raise TimeoutError(f"VM {vmid} did not report an IP address")
