"""Build template loading and validation for hyvebuild."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from hyvebuild.constants import (
    BUILD_TYPE,
    CHECKSUM_TYPES,
    DEFAULT_HTTP_IP,
    DEFAULT_HYVE_BINARIES,
    DISK_FORMATS,
    RAW_TEMPLATE_FIELDS,
)
from hyvebuild.exceptions import BuildError
from hyvebuild.models import BuildConfig
from hyvebuild.template import default_functions, render
from hyvebuild.utils import downloadable_url, parse_duration

_STRING_FIELDS = {
    "boot_wait",
    "format",
    "http_directory",
    "http_ip",
    "hyve_binary",
    "iso_checksum",
    "iso_checksum_type",
    "iso_url",
    "kernel_arguments",
    "linux_initrd",
    "linux_kernel",
    "memory_size",
    "net_device",
    "output_directory",
    "shutdown_timeout",
    "vm_name",
}
_INT_FIELDS = {"cpus", "disk_size", "http_port_min", "http_port_max"}
_LIST_FIELDS = {"boot_command", "hyveargs", "iso_urls"}
KNOWN_KEYS = _STRING_FIELDS | _INT_FIELDS | _LIST_FIELDS

CHECKSUM_NONE_WARNING = (
    "A checksum type of 'none' was specified. Since ISO files are so big,\n"
    "a checksum is highly recommended."
)


def load_template(path: Path) -> Dict[str, Any]:
    """Read a YAML build template.

    The builder settings may sit at the top level or under a ``builder`` key.
    """
    if not path.exists():
        raise BuildError(f"Template not found: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise BuildError(f"Template {path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise BuildError(f"Cannot read template {path}: {exc}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BuildError(f"Template {path} must contain a YAML mapping, got {type(data).__name__}")
    if "builder" in data:
        builder = data["builder"]
        if not isinstance(builder, dict):
            raise BuildError(f"Template {path}: 'builder' must be a mapping")
        return builder
    return data


def default_hyve_binary(platform: Optional[str] = None) -> str:
    platform = platform if platform is not None else sys.platform
    for prefix, binary in DEFAULT_HYVE_BINARIES.items():
        if platform.startswith(prefix):
            return binary
    return ""


def _coerce_string(key: str, value: Any, errors: List[BuildError]) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        errors.append(BuildError(f"'{key}' expected a string, got {type(value).__name__}"))
        return None
    return str(value)


def _coerce_int(key: str, value: Any, errors: List[BuildError]) -> Optional[int]:
    if isinstance(value, bool):
        errors.append(BuildError(f"'{key}' expected an unsigned integer, got bool"))
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        errors.append(BuildError(f"'{key}' expected an unsigned integer, got {value!r}"))
        return None
    return value


def _coerce_list(key: str, value: Any, errors: List[BuildError]) -> Optional[List[str]]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        errors.append(BuildError(f"'{key}' expected a list of strings, got {type(value).__name__}"))
        return None
    items: List[str] = []
    for idx, item in enumerate(value):
        coerced = _coerce_string(f"{key}[{idx}]", item, errors)
        if coerced is not None:
            items.append(coerced)
    return items


def _decode(raws: Tuple[Mapping[str, Any], ...], errors: List[BuildError]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for raw in raws:
        if not isinstance(raw, Mapping):
            errors.append(BuildError(f"configuration must be a mapping, got {type(raw).__name__}"))
            continue
        merged.update(raw)

    unknown = sorted(str(key) for key in merged if key not in KNOWN_KEYS)
    for key in unknown:
        errors.append(BuildError(f"unknown configuration key: '{key}'"))

    decoded: Dict[str, Any] = {}
    for key, value in merged.items():
        if value is None or key not in KNOWN_KEYS:
            continue
        if key in _STRING_FIELDS:
            coerced = _coerce_string(key, value, errors)
        elif key in _INT_FIELDS:
            coerced = _coerce_int(key, value, errors)
        else:
            coerced = _coerce_list(key, value, errors)
        if coerced is not None:
            decoded[key] = coerced
    return decoded


def _interpolate(decoded: Dict[str, Any], build_name: str, errors: List[BuildError]) -> None:
    functions = default_functions(build_name=build_name, build_type=BUILD_TYPE)
    for key, value in list(decoded.items()):
        if key in RAW_TEMPLATE_FIELDS:
            continue
        try:
            if isinstance(value, str):
                decoded[key] = render(value, functions=functions)
            elif isinstance(value, list):
                decoded[key] = [render(item, functions=functions) for item in value]
        except BuildError as exc:
            errors.append(BuildError(f"Error interpolating '{key}': {exc}"))


def prepare_config(
    *raws: Mapping[str, Any],
    build_name: str = "hyve",
    force: bool = False,
    debug: bool = False,
    platform: Optional[str] = None,
) -> Tuple[BuildConfig, List[str], List[BuildError]]:
    """Decode raw template mappings into a BuildConfig.

    Returns the config together with every warning and every error found;
    the caller decides whether the error list is fatal.
    """
    errors: List[BuildError] = []
    warnings: List[str] = []

    decoded = _decode(raws, errors)
    _interpolate(decoded, build_name, errors)

    hyve_binary = decoded.get("hyve_binary") or default_hyve_binary(platform)
    if not hyve_binary:
        errors.append(
            BuildError(
                "unsupported OS, only bhyve on FreeBSD and xhyve on Darwin (OS X) are supported! "
                "Set hyve_binary to use another hypervisor binary."
            )
        )

    cfg = BuildConfig(
        iso_checksum_type=decoded.get("iso_checksum_type", "").strip().lower(),
        iso_urls=list(decoded.get("iso_urls", [])),
        hyve_binary=hyve_binary,
        output_directory=decoded.get("output_directory") or f"output-{build_name}",
        vm_name=decoded.get("vm_name") or f"packer-{build_name}",
        iso_checksum=decoded.get("iso_checksum", "").strip(),
        boot_command=list(decoded.get("boot_command", [])),
        cpus=decoded.get("cpus", 0),
        disk_size=decoded.get("disk_size") or 40000,
        format=(decoded.get("format") or "raw").lower(),
        http_directory=decoded.get("http_directory", ""),
        http_ip=decoded.get("http_ip") or DEFAULT_HTTP_IP,
        http_port_min=decoded.get("http_port_min") or 8000,
        http_port_max=decoded.get("http_port_max") or 9000,
        linux_kernel=decoded.get("linux_kernel", ""),
        linux_initrd=decoded.get("linux_initrd", ""),
        kernel_arguments=decoded.get("kernel_arguments") or "earlyprintk=serial console=ttyS0",
        memory_size=decoded.get("memory_size", ""),
        net_device=decoded.get("net_device") or "virtio-net",
        hyveargs=list(decoded.get("hyveargs", [])),
        build_name=build_name,
        force=force,
        debug=debug,
    )

    if cfg.format not in DISK_FORMATS:
        errors.append(BuildError("invalid format, only 'qcow2' or 'raw' are allowed"))

    if cfg.http_port_min > cfg.http_port_max:
        errors.append(BuildError("http_port_min must be less than http_port_max"))
    if cfg.http_port_max > 65535:
        errors.append(BuildError("http_port_max must be <= 65535"))

    if not cfg.iso_checksum_type:
        errors.append(BuildError("The iso_checksum_type must be specified."))
    elif cfg.iso_checksum_type != "none":
        if not cfg.iso_checksum:
            errors.append(BuildError("Due to large file sizes, an iso_checksum is required"))
        else:
            cfg.iso_checksum = cfg.iso_checksum.lower()
        if cfg.iso_checksum_type not in CHECKSUM_TYPES:
            errors.append(BuildError(f"Unsupported checksum type: {cfg.iso_checksum_type}"))

    single_url = decoded.get("iso_url", "")
    if not single_url and not cfg.iso_urls:
        errors.append(BuildError("One of iso_url or iso_urls must be specified."))
    elif single_url and cfg.iso_urls:
        errors.append(BuildError("Only one of iso_url or iso_urls may be specified."))
    elif single_url:
        cfg.iso_urls = [single_url]

    for idx, url in enumerate(cfg.iso_urls):
        try:
            cfg.iso_urls[idx] = downloadable_url(url)
        except ValueError as exc:
            errors.append(BuildError(f"Failed to parse iso_url {idx + 1}: {exc}"))

    if not force and os.path.exists(cfg.output_directory):
        errors.append(
            BuildError(f"Output directory '{cfg.output_directory}' already exists. It must not exist.")
        )

    for key, default in (("boot_wait", "10s"), ("shutdown_timeout", "5m")):
        raw_value = decoded.get(key) or default
        try:
            setattr(cfg, key, parse_duration(raw_value))
        except ValueError as exc:
            errors.append(BuildError(f"Failed parsing {key}: {exc}"))

    if cfg.iso_checksum_type == "none":
        warnings.append(CHECKSUM_NONE_WARNING)

    return cfg, warnings, errors
