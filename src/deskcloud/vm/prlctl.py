"""Thin async wrapper around the ``prlctl`` command-line tool.

Commands run locally, or on a remote Parallels host over ``ssh`` when
``ssh_host`` is set.
"""

from __future__ import annotations

import asyncio
import json
import logging

logger = logging.getLogger(__name__)

POWER_COMMANDS = {"stop", "suspend", "pause", "resume", "start"}


class PrlctlError(RuntimeError):
    """A prlctl invocation exited with a non-zero status."""


class PrlctlTransport:
    def __init__(self, ssh_host: str = "", binary: str = "prlctl") -> None:
        self.ssh_host = ssh_host
        self.binary = binary

    def _argv(self, *args: str) -> list[str]:
        argv = [self.binary, *args]
        if self.ssh_host:
            return ["ssh", "-o", "BatchMode=yes", self.ssh_host, *argv]
        return argv

    async def _run(self, *args: str) -> tuple[int, str, str]:
        argv = self._argv(*args)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return proc.returncode or 0, stdout.decode().strip(), stderr.decode().strip()

    async def _check(self, *args: str) -> str:
        rc, stdout, stderr = await self._run(*args)
        if rc != 0:
            raise PrlctlError(f"prlctl {' '.join(args)} failed ({rc}): {stderr}")
        return stdout

    async def version(self) -> str:
        return await self._check("--version")

    async def list_vms(self) -> list[dict]:
        """Full listing of every VM known to the host."""
        out = await self._check("list", "--all", "--full", "--json")
        return json.loads(out) if out else []

    async def vm_info(self, vmid: str) -> dict | None:
        """Listing entry for one VM, matched by name or uuid."""
        for vm in await self.list_vms():
            if vmid in (vm.get("name"), vm.get("uuid"), vm.get("uuid", "").strip("{}")):
                return vm
        return None

    async def start(self, vmid: str) -> None:
        logger.info("Starting VM %s", vmid)
        await self._check("start", vmid)

    async def clone_linked(self, parent_vmid: str, name: str) -> None:
        logger.info("Creating linked clone %s of %s", name, parent_vmid)
        await self._check("clone", parent_vmid, "--name", name, "--linked")

    async def power(self, vmid: str, command: str) -> None:
        if command not in POWER_COMMANDS:
            raise ValueError(f"Unsupported power command: {command}")
        logger.info("Sending %s to VM %s", command, vmid)
        await self._check(command, vmid)
