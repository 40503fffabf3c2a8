"""Data models for hyvebuild."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class BuildConfig:
    iso_checksum_type: str
    iso_urls: List[str]
    hyve_binary: str
    output_directory: str
    vm_name: str
    iso_checksum: str = ""
    boot_command: List[str] = field(default_factory=list)
    cpus: int = 0
    disk_size: int = 40000  # MB
    format: str = "raw"
    http_directory: str = ""
    http_ip: str = "10.0.2.2"
    http_port_min: int = 8000
    http_port_max: int = 9000
    linux_kernel: str = ""
    linux_initrd: str = ""
    kernel_arguments: str = "earlyprintk=serial console=ttyS0"
    memory_size: str = ""
    net_device: str = "virtio-net"
    hyveargs: List[str] = field(default_factory=list)
    # Durations, in seconds
    boot_wait: float = 10.0
    shutdown_timeout: float = 300.0
    # Build options from the command line
    build_name: str = "hyve"
    force: bool = False
    debug: bool = False

    @property
    def disk_filename(self) -> str:
        return f"{self.vm_name}.{self.format}"
