#!/usr/bin/env python3
"""Validate templates/*.yaml: config correctness and ISO URL reachability."""

from __future__ import annotations

import sys
from pathlib import Path

import requests

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from hyvebuild.config import load_template, prepare_config  # noqa: E402
from hyvebuild.exceptions import BuildError  # noqa: E402

TEMPLATES_DIR = ROOT / "templates"
REQUEST_TIMEOUT = 30
USER_AGENT = "hyvebuild/template-validator (GitHub Actions)"


# ── Phase 1: Config validation (fail-fast) ──────────────────────────


def validate_config(path: Path) -> tuple[list[str], list[str]]:
    """Return (errors, iso_urls) for one template."""
    try:
        raw = load_template(path)
    except BuildError as exc:
        return [f"[{path.name}] {exc}"], []
    # Platform and output directory are properties of the build host, not the template.
    raw.setdefault("hyve_binary", "xhyve")
    cfg, _warnings, errors = prepare_config(raw, build_name=path.stem, force=True)
    return [f"[{path.name}] {err}" for err in errors], cfg.iso_urls


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(name: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    if not url.startswith(("http://", "https://")):
        return None
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # Some servers reject HEAD; fall back to GET with streaming
        if resp.status_code in (403, 405):
            resp = session.get(
                url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True
            )
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{name}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{name}] {exc.__class__.__name__}: {exc} for {url}"


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    templates = sorted(TEMPLATES_DIR.glob("*.yaml"))
    print(f"Found {len(templates)} template(s) in {TEMPLATES_DIR}")

    print("\n=== Phase 1: Config validation ===")
    config_errors: list[str] = []
    urls: dict[str, list[str]] = {}
    for path in templates:
        errors, iso_urls = validate_config(path)
        config_errors.extend(errors)
        urls[path.name] = iso_urls
    if config_errors:
        for e in config_errors:
            print(f"  ERROR: {e}")
        print(f"\nConfig validation failed with {len(config_errors)} error(s)")
        return 1
    print(f"  OK: {len(templates)} templates valid")

    print("\n=== Phase 2: URL reachability ===")
    url_errors = [err for name, iso_urls in urls.items() for url in iso_urls if (err := check_url(name, url))]
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)} unreachable")
        return 1
    print("  OK: all ISO URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
