"""Build artifact assembly for hyvebuild."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from types import MappingProxyType
from typing import Any, List, Mapping, Optional, Tuple

from hyvebuild.constants import BUILDER_ID
from hyvebuild.exceptions import BuildError


def _raise(exc: OSError) -> None:
    raise exc


def collect_files(directory: Path) -> List[str]:
    """Every regular file below ``directory``; directories are not listed."""
    files: List[str] = []
    try:
        for root, _dirs, names in os.walk(directory, onerror=_raise):
            files.extend(os.path.join(root, name) for name in names)
    except OSError as exc:
        raise BuildError(f"Failed to list artifact files in {directory}: {exc}")
    return files


class Artifact:
    """Files produced by a finished build plus metadata for post-processors."""

    def __init__(self, directory: Path, files: List[str], metadata: Mapping[str, Any], vm_name: str = "") -> None:
        self._dir = Path(directory)
        self._files: Tuple[str, ...] = tuple(files)
        self._metadata = MappingProxyType(dict(metadata))
        self._vm_name = vm_name

    @property
    def builder_id(self) -> str:
        return BUILDER_ID

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def files(self) -> Tuple[str, ...]:
        return self._files

    @property
    def id(self) -> str:
        return self._vm_name

    @property
    def metadata(self) -> Mapping[str, Any]:
        return self._metadata

    def state(self, key: str) -> Optional[Any]:
        return self._metadata.get(key)

    def destroy(self) -> None:
        shutil.rmtree(self._dir)

    def __str__(self) -> str:
        return f"VM files in directory: {self._dir}"


def build_artifact(directory: Path, disk_name: str, disk_format: str, disk_size: int, vm_name: str = "") -> Artifact:
    files = collect_files(directory)
    metadata = {
        "diskName": disk_name,
        "diskFormat": disk_format,
        "diskSize": int(disk_size),
    }
    return Artifact(directory, files, metadata, vm_name=vm_name)
