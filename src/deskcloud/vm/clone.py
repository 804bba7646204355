"""Linked-clone naming and derivation."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from deskcloud.vm.template import VMTemplate


def _unique_suffix(now: datetime) -> str:
    # Time of day first, then date, then microseconds
    return now.strftime("%H%M%S%d%m%Y") + f"{now.microsecond:06d}"


def create_linked_clone(template: VMTemplate, now: datetime | None = None) -> VMTemplate:
    """Derive a uniquely named clone descriptor from a template.

    The template itself is left untouched; the clone records the
    template's vmid as its parent.
    """
    if now is None:
        now = datetime.now()
    return replace(
        template,
        vmid=f"{template.vmid}_{_unique_suffix(now)}",
        parent_vmid=template.vmid,
        is_linked_clone=True,
    )
