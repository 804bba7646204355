"""VM templates: the immutable catalog of configured virtual machines.

A template describes one VM the cloud may hand out as a build agent:
which labels it serves, how the agent inside it is reached, and what
power state the VM returns to once its agent is released.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator

logger = logging.getLogger(__name__)


class PostBuildBehavior(str, Enum):
    """What happens to a VM after its agent is released."""

    SUSPEND = "Suspend"
    STOP = "Stop"
    KEEP_RUNNING = "KeepRunning"
    RETURN_PREV_STATE = "ReturnPrevState"


class VMState(str, Enum):
    SUSPENDED = "suspended"
    PAUSED = "paused"
    RUNNING = "running"
    STOPPED = "stopped"


class RetentionPolicy(str, Enum):
    # Reclaim once the agent has been idle past the timeout
    IDLE = "idle"
    # Reclaim as soon as the agent goes idle after its first task
    RUN_ONCE = "run_once"


@dataclass(frozen=True)
class LaunchConfig:
    """How to reach the agent running inside a VM.

    ``host`` is empty in configuration and filled in with the VM's IP
    address once the VM has started.
    """

    host: str = ""
    port: int = 8731
    scheme: str = "http"
    health_timeout: int = 120

    @property
    def base_url(self) -> str:
        if not self.host:
            raise RuntimeError("Agent host not resolved yet")
        return f"{self.scheme}://{self.host}:{self.port}"

    def with_host(self, host: str) -> LaunchConfig:
        return replace(self, host=host)


@dataclass(frozen=True)
class VMTemplate:
    vmid: str
    labels: str = ""
    remote_fs: str = ""
    launch: LaunchConfig = field(default_factory=LaunchConfig)
    post_build_behavior: PostBuildBehavior = PostBuildBehavior.SUSPEND
    retention: RetentionPolicy = RetentionPolicy.IDLE
    parent_vmid: str | None = None
    is_linked_clone: bool = False


def parse_post_build_behavior(raw: str | None) -> PostBuildBehavior:
    """Parse a configured behavior name, falling back to Suspend."""
    try:
        return PostBuildBehavior(raw)
    except ValueError:
        logger.warning("Unknown post-build behavior %r, using Suspend", raw)
        return PostBuildBehavior.SUSPEND


def parse_vm_state(raw: str | None) -> VMState | None:
    """Map a raw power state reported by the hypervisor to a VMState.

    Matching is exact and case-sensitive; anything unrecognised is None.
    """
    for state in VMState:
        if raw == state.value:
            return state
    return None


def parse_retention_policy(raw: str | None) -> RetentionPolicy:
    if raw is None:
        return RetentionPolicy.IDLE
    try:
        return RetentionPolicy(raw)
    except ValueError:
        logger.warning("Unknown retention policy %r, using idle", raw)
        return RetentionPolicy.IDLE


class TemplateRegistry:
    """Ordered, read-only catalog of the templates configured for one cloud."""

    def __init__(self, templates: list[VMTemplate] | None = None) -> None:
        self._templates: tuple[VMTemplate, ...] = tuple(templates or ())
        self._by_vmid: dict[str, VMTemplate] = {}
        for t in self._templates:
            if t.vmid in self._by_vmid:
                raise ValueError(f"Duplicate vmid in configuration: {t.vmid}")
            self._by_vmid[t.vmid] = t

    @property
    def templates(self) -> tuple[VMTemplate, ...]:
        return self._templates

    def get(self, vmid: str) -> VMTemplate | None:
        return self._by_vmid.get(vmid)

    def __iter__(self) -> Iterator[VMTemplate]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)
