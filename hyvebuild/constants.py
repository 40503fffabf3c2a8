"""Global constants and defaults for hyvebuild."""

from __future__ import annotations

import os
import re
from pathlib import Path

BUILDER_ID = "hyvebuild.hyve"
BUILD_TYPE = "hyve"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

CACHE_DIR = Path(os.environ.get("HYVEBUILD_CACHE_DIR", "packer_cache"))

# Hypervisor binary picked when a template does not name one.
DEFAULT_HYVE_BINARIES = {
    "darwin": "xhyve",
    "freebsd": "bhyve",
}
QEMU_IMG_BINARY = "qemu-img"

# How long a freshly spawned hypervisor must survive before the launch is
# considered successful.
LAUNCH_GRACE_PERIOD = 2.0
# Exit code reported when the hypervisor died without a usable exit status.
EXIT_SENTINEL = 254

COM1_RE = re.compile(r"COM1 connected to (/dev/\S+)")
VERSION_RE = re.compile(r"[bx]hyve: [0-9]+\.[0-9]+\.[0-9]+")

# Boot command pacing.
KEY_SETTLE_DELAY = 0.1
WAIT_DIRECTIVES = (
    ("<wait>", 1),
    ("<wait5>", 5),
    ("<wait10>", 10),
)
SERIAL_BAUD = 9600

# Address of the host as seen from the guest's default network.
DEFAULT_HTTP_IP = "10.0.2.2"

DISK_FORMATS = {"raw", "qcow2"}
CHECKSUM_TYPES = {"md5", "sha1", "sha256", "sha512"}

DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")

# Keys shared between pipeline steps.
STATE_CONFIG = "config"
STATE_DRIVER = "driver"
STATE_CANCEL = "cancel"
STATE_ERROR = "error"
STATE_CANCELLED = "cancelled"
STATE_HALTED = "halted"
STATE_ISO_PATH = "iso_path"
STATE_DISK_FILENAME = "disk_filename"
STATE_HTTP_PORT = "http_port"
STATE_HTTP_IP = "http_ip"

# Template fields rendered at run time rather than when the config is decoded.
RAW_TEMPLATE_FIELDS = {"boot_command", "hyveargs"}
