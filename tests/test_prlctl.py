"""Tests for the prlctl wrapper and the connector built on it."""

import json

import pytest

from deskcloud.agent import HttpAgentTransport
from deskcloud.connector import Connector
from deskcloud.vm.clone import create_linked_clone
from deskcloud.vm.prlctl import PrlctlError, PrlctlTransport
from deskcloud.vm.state import VMInstance
from deskcloud.vm.template import LaunchConfig, VMState, VMTemplate


_POWER_STATES = {"stop": "stopped", "suspend": "suspended", "pause": "paused", "resume": "running"}


class ScriptedPrlctl(PrlctlTransport):
    """Answers prlctl invocations from an in-memory VM table."""

    def __init__(self, vms: list[dict], ssh_host: str = "") -> None:
        super().__init__(ssh_host=ssh_host)
        self.vms = vms
        self.calls: list[tuple[str, ...]] = []
        self.fail: set[str] = set()
        self.boot_ip = "10.211.55.7"

    async def _run(self, *args: str) -> tuple[int, str, str]:
        self.calls.append(args)
        if args[0] in self.fail:
            return 255, "", f"{args[0]} failed"
        if args[0] == "list":
            return 0, json.dumps(self.vms), ""
        if args[0] == "start":
            for vm in self.vms:
                if vm["name"] == args[1]:
                    vm["status"] = "running"
                    vm["ip_configured"] = self.boot_ip
        if args[0] in _POWER_STATES:
            for vm in self.vms:
                if vm["name"] == args[1]:
                    vm["status"] = _POWER_STATES[args[0]]
        if args[0] == "clone":
            self.vms.append({"name": args[3], "uuid": "{c10e}", "status": "stopped", "ip_configured": "-"})
        return 0, "", ""


class FakeAgents(HttpAgentTransport):
    def __init__(self) -> None:
        super().__init__()
        self.waited: list[str] = []

    async def wait_ready(self, url: str, health_timeout: int) -> None:
        self.waited.append(url)


def test_argv_local_and_ssh():
    assert PrlctlTransport()._argv("start", "vm") == ["prlctl", "start", "vm"]
    assert PrlctlTransport(ssh_host="ci@mac")._argv("start", "vm") == [
        "ssh", "-o", "BatchMode=yes", "ci@mac", "prlctl", "start", "vm",
    ]


@pytest.mark.asyncio
async def test_failed_command_raises():
    prl = ScriptedPrlctl([])
    prl.fail = {"start"}
    with pytest.raises(PrlctlError):
        await prl.start("vm")


@pytest.mark.asyncio
async def test_vm_info_matches_name_or_uuid():
    prl = ScriptedPrlctl([{"name": "build1", "uuid": "{1234-abcd}", "status": "stopped"}])
    assert (await prl.vm_info("build1"))["status"] == "stopped"
    assert (await prl.vm_info("1234-abcd"))["name"] == "build1"
    assert await prl.vm_info("nope") is None


@pytest.mark.asyncio
async def test_power_rejects_unknown_command():
    prl = ScriptedPrlctl([])
    with pytest.raises(ValueError):
        await prl.power("vm", "reboot-into-bios")
    await prl.power("vm", "suspend")
    assert prl.calls == [("suspend", "vm")]


def _connector(prl: PrlctlTransport) -> Connector:
    return Connector(prl, FakeAgents(), name="test host agent", ip_poll_interval=0.01)


@pytest.mark.asyncio
async def test_connector_reachability():
    prl = ScriptedPrlctl([])
    assert await _connector(prl).is_reachable()
    prl.fail = {"--version"}
    assert not await _connector(prl).is_reachable()


@pytest.mark.asyncio
async def test_connector_starts_stopped_vm():
    prl = ScriptedPrlctl([{"name": "build1", "uuid": "{1}", "status": "stopped", "ip_configured": "-"}])
    started = await _connector(prl).start_vm(VMInstance(template=VMTemplate(vmid="build1")))

    assert started.previous_state is VMState.STOPPED
    assert started.host == "10.211.55.7"
    assert ("start", "build1") in prl.calls


@pytest.mark.asyncio
async def test_connector_resumes_paused_vm():
    prl = ScriptedPrlctl([{"name": "build1", "uuid": "{1}", "status": "paused", "ip_configured": "10.0.0.3"}])
    started = await _connector(prl).start_vm(VMInstance(template=VMTemplate(vmid="build1")))

    assert started.previous_state is VMState.PAUSED
    assert ("resume", "build1") in prl.calls


@pytest.mark.asyncio
async def test_connector_clones_before_start():
    prl = ScriptedPrlctl([{"name": "base", "uuid": "{1}", "status": "stopped", "ip_configured": "-"}])
    clone = create_linked_clone(VMTemplate(vmid="base"))

    started = await _connector(prl).start_vm(VMInstance(template=clone))

    assert prl.calls[0] == ("clone", "base", "--name", clone.vmid, "--linked")
    assert ("start", clone.vmid) in prl.calls
    assert started.previous_state is VMState.STOPPED
    assert started.host == "10.211.55.7"


@pytest.mark.asyncio
async def test_connector_missing_vm_returns_none():
    prl = ScriptedPrlctl([])
    assert await _connector(prl).start_vm(VMInstance(template=VMTemplate(vmid="ghost"))) is None


@pytest.mark.asyncio
async def test_connector_start_failure_returns_none():
    prl = ScriptedPrlctl([{"name": "build1", "uuid": "{1}", "status": "stopped"}])
    prl.fail = {"start"}
    assert await _connector(prl).start_vm(VMInstance(template=VMTemplate(vmid="build1"))) is None


@pytest.mark.asyncio
async def test_create_agent_on_uses_resolved_host():
    prl = ScriptedPrlctl([])
    connector = _connector(prl)
    template = VMTemplate(vmid="build1", remote_fs="/home/ci", launch=LaunchConfig(port=9000))

    agent = await connector.create_agent_on(VMInstance(template=template), 0, "build1-abcd", "10.0.0.9")

    assert agent.url == "http://10.0.0.9:9000"
    assert agent.remote_fs == "/home/ci"
    assert connector.agents.waited == ["http://10.0.0.9:9000"]


@pytest.mark.asyncio
async def test_vm_without_ip_is_returned_to_previous_state():
    prl = ScriptedPrlctl([{"name": "build1", "uuid": "{1}", "status": "stopped", "ip_configured": "-"}])
    prl.boot_ip = "-"
    connector = _connector(prl)
    instance = VMInstance(template=VMTemplate(vmid="build1", launch=LaunchConfig(health_timeout=0)))

    assert await connector.start_vm(instance) is None
    assert ("stop", "build1") in prl.calls
    assert (await prl.vm_info("build1"))["status"] == "stopped"

    prl.boot_ip = "10.211.55.8"
    started = await connector.start_vm(instance)
    assert started.previous_state is VMState.STOPPED


@pytest.mark.asyncio
async def test_failed_resume_leaves_running_vm_alone():
    prl = ScriptedPrlctl([{"name": "build1", "uuid": "{1}", "status": "running", "ip_configured": "-"}])
    connector = _connector(prl)
    instance = VMInstance(template=VMTemplate(vmid="build1", launch=LaunchConfig(health_timeout=0)))

    assert await connector.start_vm(instance) is None
    # Already running before the attempt, so nothing to undo
    assert [c for c in prl.calls if c[0] != "list"] == []
