"""Configuration management using Pydantic settings."""

import shlex
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "vgmanager"
    debug: bool = False

    # Inventory settings
    poll_interval_seconds: float = 5.0  # refresh cadence while a poll is armed
    inventory_refresh_interval: int = 60  # seconds between discovery passes
    auto_poll_while_needed: bool = True
    lvm_helper_command: str = "vgmanager-lvm-helper"
    scan_block_devices: bool = True

    # Object paths
    object_path_prefix: str = "/org/freedesktop/UDisks2/lvm"
    block_object_path_prefix: str = "/org/freedesktop/UDisks2/block_devices"

    # Job execution settings
    job_timeout_seconds: float = 3600.0
    request_timeout_seconds: float = 600.0

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_lvm_helper_argv(self) -> List[str]:
        """Split the helper command into an argument vector."""
        return shlex.split(self.lvm_helper_command)


settings = Settings()
