from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field

from deskcloud.vm.template import (
    LaunchConfig,
    VMTemplate,
    parse_post_build_behavior,
    parse_retention_policy,
)


@dataclass
class CloudConfig:
    name: str = "deskcloud"
    label_string: str = ""
    remote_fs: str = ""
    use_connector_as_builder: bool = False
    max_concurrent_vms: int | None = None  # None = no ceiling
    use_linked_clones: bool = False
    ssh_host: str = ""  # empty = run prlctl locally
    vms: list[VMTemplate] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_concurrent_vms is not None and self.max_concurrent_vms < 0:
            raise ValueError("max_concurrent_vms must be >= 0")


@dataclass
class DeskcloudConfig:
    config_path: str = "/etc/deskcloud/deskcloud.toml"
    host: str = "0.0.0.0"
    port: int = 3100
    check_interval_seconds: int = 60

    @staticmethod
    def from_env() -> DeskcloudConfig:
        return DeskcloudConfig(
            config_path=os.environ.get("DESKCLOUD_CONFIG", "/etc/deskcloud/deskcloud.toml"),
            host=os.environ.get("DESKCLOUD_HOST", "0.0.0.0"),
            port=int(os.environ.get("DESKCLOUD_PORT", "3100")),
            check_interval_seconds=int(os.environ.get("DESKCLOUD_CHECK_INTERVAL", "60")),
        )


def _optional_int(value) -> int | None:
    return None if value is None else int(value)


def _vm_from_dict(data: dict) -> VMTemplate:
    if not data.get("vmid"):
        raise ValueError("Every [[cloud.vms]] entry needs a vmid")
    launch_data = data.get("launch", {})
    launch = LaunchConfig(
        port=int(launch_data.get("port", 8731)),
        scheme=launch_data.get("scheme", "http"),
        health_timeout=int(launch_data.get("health_timeout", 120)),
    )
    return VMTemplate(
        vmid=data["vmid"],
        labels=data.get("labels", ""),
        remote_fs=data.get("remote_fs", ""),
        launch=launch,
        post_build_behavior=parse_post_build_behavior(data.get("post_build_behavior")),
        retention=parse_retention_policy(data.get("retention")),
    )


def cloud_config_from_dict(data: dict) -> CloudConfig:
    """Build a CloudConfig from the ``[cloud]`` table of a config file."""
    return CloudConfig(
        name=data.get("name", "deskcloud"),
        label_string=data.get("label_string", ""),
        remote_fs=data.get("remote_fs", ""),
        use_connector_as_builder=bool(data.get("use_connector_as_builder", False)),
        max_concurrent_vms=_optional_int(data.get("max_concurrent_vms")),
        use_linked_clones=bool(data.get("use_linked_clones", False)),
        ssh_host=data.get("ssh_host", ""),
        vms=[_vm_from_dict(vm) for vm in data.get("vms", [])],
    )


def load_cloud_config(path: str) -> CloudConfig:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return cloud_config_from_dict(data.get("cloud", {}))
