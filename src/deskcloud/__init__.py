"""Ephemeral build agents on Parallels Desktop virtual machines."""

from deskcloud.cloud import Cloud, PlannedAgent
from deskcloud.config import CloudConfig, load_cloud_config
from deskcloud.retention import RetentionMonitor

__all__ = ["Cloud", "CloudConfig", "PlannedAgent", "RetentionMonitor", "load_cloud_config"]
