"""Deskcloud server — capacity signals in, planned agents out.

Wires the cloud configuration, the provisioning engine, and the retention
monitor together, and runs the periodic retention check loop.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from deskcloud.agent import AgentHandle, HttpAgentTransport
from deskcloud.cloud import Cloud, PlannedAgent
from deskcloud.config import DeskcloudConfig, load_cloud_config
from deskcloud.retention import RetentionMonitor

logger = logging.getLogger(__name__)

_config: DeskcloudConfig = DeskcloudConfig()
_cloud: Cloud | None = None
_monitor: RetentionMonitor | None = None


def _get_cloud() -> Cloud:
    if _cloud is None:
        raise RuntimeError("Server not initialized")
    return _cloud


def _get_monitor() -> RetentionMonitor:
    if _monitor is None:
        raise RuntimeError("Server not initialized")
    return _monitor


async def _retention_loop(monitor: RetentionMonitor, interval: int) -> None:
    """Periodic trigger: check every live agent once per interval."""
    while True:
        try:
            await monitor.check_all()
        except Exception:
            logger.exception("Retention check pass failed")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _config, _cloud, _monitor

    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    _config = DeskcloudConfig.from_env()
    _cloud = Cloud(load_cloud_config(_config.config_path))
    _monitor = RetentionMonitor(_cloud, HttpAgentTransport())
    logger.info("Loaded cloud %s with %d VMs", _cloud.name, len(_cloud.registry))

    loop_task = asyncio.create_task(
        _retention_loop(_monitor, _config.check_interval_seconds)
    )

    yield

    loop_task.cancel()
    try:
        await loop_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="Deskcloud", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok"}


def _register_when_ready(monitor: RetentionMonitor, planned: PlannedAgent) -> None:
    """Hand the agent to the retention monitor once bring-up finishes."""

    def _done(task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        agent: AgentHandle = task.result()
        monitor.start(agent)

    planned.future.add_done_callback(_done)


# ── Provisioning ──────────────────────────────────────────────

@app.post("/api/provision")
async def provision(body: dict):
    """Provision agents for excess workload on a label."""
    cloud = _get_cloud()
    monitor = _get_monitor()
    label = body.get("label")
    try:
        excess = int(body.get("excess_workload", 0))
        planned = await cloud.provision(label, excess)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    for p in planned:
        _register_when_ready(monitor, p)

    return {
        "planned": [
            {"name": p.name, "vmid": cloud.tracker[p.instance_index].vmid, "executors": p.executors}
            for p in planned
        ]
    }


@app.get("/api/can-provision")
async def can_provision(label: str | None = None):
    return {"label": label, "can_provision": _get_cloud().can_provision(label)}


@app.get("/api/vms")
async def list_vms():
    return _get_cloud().status()


# ── Agent activity ────────────────────────────────────────────

def _require_agent(name: str) -> None:
    if _get_monitor().get(name) is None:
        raise HTTPException(status_code=404, detail=f"Agent not found: {name}")


@app.post("/api/agents/{name}/busy")
async def agent_busy(name: str):
    _require_agent(name)
    _get_monitor().mark_busy(name)
    return {"name": name, "state": _get_monitor().get(name).state.value}


@app.post("/api/agents/{name}/idle")
async def agent_idle(name: str):
    _require_agent(name)
    _get_monitor().mark_idle(name)
    return {"name": name, "state": _get_monitor().get(name).state.value}


@app.delete("/api/agents/{name}")
async def remove_agent(name: str):
    """External teardown of an agent: stop tracking it and free its VM."""
    _require_agent(name)
    await _get_monitor().forget(name)
    return {"status": "removed", "name": name}


# ── Server entry point ────────────────────────────────────────

async def start_server(host: str = "0.0.0.0", port: int = 3100) -> None:
    """Start the uvicorn server."""
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()
