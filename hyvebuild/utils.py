"""Utility functions for hyvebuild."""

from __future__ import annotations

import hashlib
import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, url2pathname, urlopen

from hyvebuild.constants import (
    _LOG_VERBOSE,
    DURATION_RE,
    TRUTHY,
)
from hyvebuild.exceptions import BuildError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def get_env_float(name: str, default: float) -> float:
    raw = get_env(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise BuildError(f"{name} must be a number (got '{raw}')")
    if value < 0:
        raise BuildError(f"{name} must be >= 0 (got {value})")
    return value


def parse_duration(raw: str) -> float:
    """Parse a Go-style duration such as ``10s``, ``5m`` or ``1h30m`` into seconds."""
    text = raw.strip()
    if not text:
        raise ValueError("invalid duration ''")
    if text == "0":
        return 0.0
    pos = 0
    total = 0.0
    scale = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
    while pos < len(text):
        match = DURATION_RE.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration '{raw}'")
        total += float(match.group(1)) * scale[match.group(2)]
        pos = match.end()
    return total


def format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    if seconds == int(seconds):
        return f"{int(seconds)}s"
    return f"{seconds:g}s"


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def downloadable_url(raw: str) -> str:
    """Normalise a user supplied ISO location into a URL.

    Bare paths become ``file://`` URLs and must point at an existing file.
    """
    parsed = urlparse(raw)
    if parsed.scheme in {"http", "https", "ftp"}:
        if not parsed.netloc:
            raise ValueError(f"URL '{raw}' has no host")
        return raw
    if parsed.scheme == "file":
        local = Path(url2pathname(parsed.path))
    elif parsed.scheme == "":
        local = Path(raw).expanduser().resolve()
    else:
        raise ValueError(f"unsupported URL scheme '{parsed.scheme}'")
    if not local.is_file():
        raise ValueError(f"source file needs to exist: {local}")
    return local.as_uri()


def file_checksum(path: Path, checksum_type: str) -> str:
    digest = hashlib.new(checksum_type)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Path, checksum: str, checksum_type: str) -> None:
    if checksum_type == "none":
        return
    actual = file_checksum(path, checksum_type)
    if actual != checksum.lower():
        raise BuildError(
            f"Checksum mismatch for {path}: expected {checksum_type} {checksum.lower()}, got {actual}"
        )


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "hyvebuild/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise BuildError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise BuildError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)

                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)  # newline after progress
            tmp.flush()
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise


def _cache_name(url: str, checksum: str) -> str:
    key = checksum.lower() or hashlib.sha1(url.encode("utf-8")).hexdigest()
    suffix = Path(urlparse(url).path).suffix or ".iso"
    return f"{key}{suffix}"


def download_iso(
    urls: List[str],
    checksum: str,
    checksum_type: str,
    cache_dir: Path,
    label: str = "Downloading ISO",
) -> Path:
    """Fetch the first reachable URL and verify its checksum.

    Local ``file://`` sources are verified in place. Remote files land in
    ``cache_dir`` keyed by checksum, so a matching cached copy is reused.
    """
    if not urls:
        raise BuildError("No ISO URLs configured")
    failures: List[str] = []
    for url in urls:
        parsed = urlparse(url)
        try:
            if parsed.scheme == "file":
                local = Path(url2pathname(parsed.path))
                log("INFO", f"Using local ISO: {local}")
                verify_checksum(local, checksum, checksum_type)
                return local

            ensure_directory(cache_dir)
            target = cache_dir / _cache_name(url, checksum)
            if target.exists() and checksum_type != "none":
                try:
                    verify_checksum(target, checksum, checksum_type)
                    log("INFO", f"Using cached ISO: {target}")
                    return target
                except BuildError:
                    log("WARN", f"Cached ISO {target} failed verification; downloading again")
                    target.unlink()
            download_file(url, target, label=label)
            verify_checksum(target, checksum, checksum_type)
            return target
        except (BuildError, OSError) as exc:
            log("WARN", f"Failed to fetch {url}: {exc}")
            failures.append(f"{url}: {exc}")
    raise BuildError("Unable to download ISO from any source:\n  " + "\n  ".join(failures))


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
