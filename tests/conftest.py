"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from hyvebuild.constants import (
    STATE_CANCEL,
    STATE_CONFIG,
    STATE_DISK_FILENAME,
    STATE_DRIVER,
    STATE_HTTP_IP,
    STATE_HTTP_PORT,
    STATE_ISO_PATH,
)
from hyvebuild.models import BuildConfig
from hyvebuild.pipeline import CancelToken


@pytest.fixture
def default_build_config(tmp_path) -> BuildConfig:
    """Return a minimal BuildConfig with sensible defaults."""
    return BuildConfig(
        iso_checksum_type="none",
        iso_urls=["file:///isos/install.iso"],
        hyve_binary="xhyve",
        output_directory=str(tmp_path / "output-test"),
        vm_name="test-vm",
        linux_kernel="/boot/vmlinuz",
        linux_initrd="/boot/initrd.gz",
        boot_wait=0.0,
    )


@pytest.fixture
def fake_driver() -> MagicMock:
    driver = MagicMock()
    driver.tty = "/dev/ttys004"
    driver.version.return_value = "xhyve: 0.2.0"
    return driver


@pytest.fixture
def state(default_build_config, fake_driver) -> dict:
    """State as it looks once the HTTP server step has run."""
    return {
        STATE_CONFIG: default_build_config,
        STATE_DRIVER: fake_driver,
        STATE_CANCEL: CancelToken(),
        STATE_ISO_PATH: "/isos/install.iso",
        STATE_DISK_FILENAME: "test-vm.raw",
        STATE_HTTP_PORT: 8123,
        STATE_HTTP_IP: "10.0.2.2",
    }


@pytest.fixture
def base_template(tmp_path) -> dict:
    """Raw template mapping that passes validation on any host."""
    iso = tmp_path / "install.iso"
    iso.write_bytes(b"not really an iso")
    return {
        "iso_url": str(iso),
        "iso_checksum": "ABC123",
        "iso_checksum_type": "md5",
        "hyve_binary": "xhyve",
        "output_directory": str(tmp_path / "output"),
    }
