"""Build agents running inside provisioned VMs, and the HTTP transport used to reach them.

Each VM runs a small agent process that exposes:
    GET  /health      – 200 once the agent can accept a connection
    POST /connect     – attach the agent to the build controller
    POST /disconnect  – detach it; returns once in-flight work is drained
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentHandle:
    """A live agent on a provisioned VM."""

    name: str
    vmid: str
    instance_index: int
    url: str
    remote_fs: str = ""


class HttpAgentTransport:
    def __init__(
        self,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._transport = transport

    async def wait_ready(self, url: str, health_timeout: int) -> None:
        """Poll the agent's /health endpoint until it responds 200 OK.

        Raises TimeoutError if it never does within ``health_timeout`` seconds.
        """
        attempts = max(1, int(health_timeout / self._poll_interval))
        for _ in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=2.0, transport=self._transport) as client:
                    r = await client.get(f"{url}/health")
                    if r.status_code == 200:
                        return
            except httpx.HTTPError:
                # Not up yet
                pass
            await asyncio.sleep(self._poll_interval)
        raise TimeoutError(f"Agent at {url} health check timed out")

    async def connect(self, agent: AgentHandle) -> None:
        await self._post(agent, "/connect")
        logger.info("Agent %s connected", agent.name)

    async def disconnect(self, agent: AgentHandle) -> None:
        await self._post(agent, "/disconnect")
        logger.info("Agent %s disconnected", agent.name)

    async def _post(self, agent: AgentHandle, path: str) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.post(
                f"{agent.url}{path}",
                json={"name": agent.name, "remote_fs": agent.remote_fs},
            )
            if r.status_code >= 400:
                raise RuntimeError(f"Agent {agent.name} {path} failed: {r.status_code} {r.text}")
