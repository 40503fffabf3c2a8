"""Vagrant box packaging for finished builds."""

from __future__ import annotations

import json
import os
import tarfile
import tempfile
from pathlib import Path

from hyvebuild.artifact import Artifact
from hyvebuild.exceptions import BuildError
from hyvebuild.utils import ensure_directory, log

BOX_DISK_NAME = "block0.img"


def package_box(artifact: Artifact, output_path: Path, provider: str = "xhyve") -> Path:
    """Write a ``.box`` holding ``metadata.json`` and the disk as ``block0.img``."""
    disk_name = artifact.state("diskName")
    if not disk_name:
        raise BuildError("Artifact has no diskName; cannot build a Vagrant box")

    disk_path = next(
        (path for path in artifact.files if os.path.basename(path) == disk_name),
        None,
    )
    if disk_path is None:
        raise BuildError(f"Disk {disk_name} not found among artifact files")

    ensure_directory(output_path.parent)
    with tempfile.TemporaryDirectory(prefix="hyvebuild-box-") as tmp:
        metadata = Path(tmp) / "metadata.json"
        metadata.write_text(json.dumps({"provider": provider}) + "\n")

        log("INFO", f"Compressing box to {output_path}")
        with tarfile.open(output_path, "w:gz") as tar:
            tar.add(metadata, arcname="metadata.json")
            log("INFO", f"Adding disk from artifact: {disk_path}")
            tar.add(disk_path, arcname=BOX_DISK_NAME)

    log("SUCCESS", f"Vagrant box written to {output_path}")
    return output_path
