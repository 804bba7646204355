"""Runtime state for every VM the cloud can hand out.

The tracker is an arena: entries are addressed by index and never move.
Configured templates occupy the first slots in declaration order; linked
clones are appended as they are created and tombstoned when released.
Callers are responsible for serialising mutations (the provisioning scan
and releases both run under the cloud's lock).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from deskcloud.vm.template import TemplateRegistry, VMState, VMTemplate


@dataclass
class VMInstance:
    template: VMTemplate
    provisioned: bool = False
    agent_name: str | None = None
    last_power_state: VMState | None = VMState.SUSPENDED
    # Resolved agent address once the VM is up
    host: str = ""
    removed: bool = False

    @property
    def vmid(self) -> str:
        return self.template.vmid

    @property
    def is_linked_clone(self) -> bool:
        return self.template.is_linked_clone


class VMStateTracker:
    """Indexed collection of VMInstance entries for one cloud."""

    def __init__(self, registry: TemplateRegistry) -> None:
        self._entries: list[VMInstance] = [VMInstance(template=t) for t in registry]

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> VMInstance:
        return self._entries[index]

    def live(self) -> Iterator[tuple[int, VMInstance]]:
        """Yield (index, instance) for every entry not yet removed, in order."""
        for index, entry in enumerate(self._entries):
            if not entry.removed:
                yield index, entry

    def add_clone(self, template: VMTemplate) -> int:
        self._entries.append(VMInstance(template=template))
        return len(self._entries) - 1

    def mark_provisioned(self, index: int, agent_name: str) -> None:
        entry = self._entries[index]
        entry.provisioned = True
        entry.agent_name = agent_name

    def mark_released(self, index: int) -> None:
        entry = self._entries[index]
        entry.provisioned = False
        entry.agent_name = None
        entry.host = ""
        # Clones are single use
        if entry.is_linked_clone:
            entry.removed = True

    def record_power_state(self, index: int, state: VMState | None) -> None:
        self._entries[index].last_power_state = state

    def set_host(self, index: int, host: str) -> None:
        self._entries[index].host = host

    def provisioned_count(self) -> int:
        return sum(1 for _, e in self.live() if e.provisioned)

    def find_by_agent(self, agent_name: str) -> int | None:
        for index, entry in self.live():
            if entry.agent_name == agent_name:
                return index
        return None

    def snapshot(self) -> list[dict]:
        return [
            {
                "index": index,
                "vmid": e.vmid,
                "labels": e.template.labels,
                "provisioned": e.provisioned,
                "agent_name": e.agent_name,
                "last_power_state": e.last_power_state.value if e.last_power_state else None,
                "linked_clone": e.is_linked_clone,
                "parent_vmid": e.template.parent_vmid,
            }
            for index, e in self.live()
        ]
