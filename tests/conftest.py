"""Shared fakes for the connector and agent transport."""

from __future__ import annotations

import asyncio

import pytest

from deskcloud.agent import AgentHandle
from deskcloud.cloud import Cloud
from deskcloud.config import CloudConfig
from deskcloud.connector import StartedVM
from deskcloud.vm.template import VMState, VMTemplate


class FakeConnector:
    """Stands in for the Parallels host: every VM starts instantly."""

    def __init__(self) -> None:
        self.name = "fake host agent"
        self.reachable = True
        self.fail_vmids: set[str] = set()
        self.states: dict[str, VMState | None] = {}
        self.started: list[str] = []
        self.commands: list[tuple[str, str]] = []
        self.bring_up_error: Exception | None = None
        self.power_error: Exception | None = None

    async def is_reachable(self) -> bool:
        return self.reachable

    async def start_vm(self, instance):
        self.started.append(instance.vmid)
        base = instance.template.parent_vmid or instance.vmid
        if base in self.fail_vmids:
            return None
        return StartedVM(
            previous_state=self.states.get(base, VMState.STOPPED),
            host=f"10.211.55.{len(self.started) + 1}",
        )

    async def create_agent_on(self, instance, index, agent_name, host):
        if self.bring_up_error is not None:
            raise self.bring_up_error
        return AgentHandle(
            name=agent_name,
            vmid=instance.vmid,
            instance_index=index,
            url=f"http://{host}:8731",
            remote_fs=instance.template.remote_fs,
        )

    async def send_power_command(self, vmid: str, command: str) -> None:
        if self.power_error is not None:
            raise self.power_error
        self.commands.append((vmid, command))


class FakeAgentTransport:
    def __init__(self) -> None:
        self.connected: list[str] = []
        self.disconnected: list[str] = []
        self.disconnect_error: Exception | None = None
        # When set, disconnect blocks until the event fires
        self.disconnect_gate: asyncio.Event | None = None

    async def connect(self, agent: AgentHandle) -> None:
        self.connected.append(agent.name)

    async def disconnect(self, agent: AgentHandle) -> None:
        if self.disconnect_gate is not None:
            await self.disconnect_gate.wait()
        if self.disconnect_error is not None:
            raise self.disconnect_error
        self.disconnected.append(agent.name)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def agent_transport() -> FakeAgentTransport:
    return FakeAgentTransport()


@pytest.fixture
def make_cloud(connector):
    """Build a Cloud over the given templates, backed by the fake connector."""
    created: list[int] = []

    def factory(config: CloudConfig):
        created.append(1)
        return connector

    def _make(vms: list[VMTemplate], **kwargs) -> Cloud:
        config = CloudConfig(name="test", vms=vms, **kwargs)
        cloud = Cloud(config, connector_factory=factory)
        cloud.connector_creations = created
        return cloud

    return _make
