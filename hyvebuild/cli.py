"""CLI entry points for hyvebuild."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import List, Optional

from hyvebuild.box import package_box
from hyvebuild.builder import Builder
from hyvebuild.config import default_hyve_binary, load_template
from hyvebuild.driver import new_driver
from hyvebuild.exceptions import BuildCancelled, BuildError, MultiError
from hyvebuild.models import BuildConfig
from hyvebuild.utils import log


def show_config(cfg: BuildConfig) -> None:
    """Print the resolved build configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if isinstance(value, list):
            print(f"  {field.name}:")
            for item in value:
                print(f"    - {item}")
        else:
            print(f"  {field.name}: {value}")


def _prepare(builder: Builder, args: argparse.Namespace, force: bool = False, debug: bool = False) -> bool:
    try:
        raw = load_template(Path(args.template))
        warnings = builder.prepare(raw, build_name=args.name, force=force, debug=debug)
    except MultiError as exc:
        for warning in exc.warnings:
            log("WARN", warning)
        for err in exc.errors:
            log("ERROR", str(err))
        return False
    except BuildError as exc:
        log("ERROR", str(exc))
        return False
    for warning in warnings:
        log("WARN", warning)
    return True


def cmd_validate(args: argparse.Namespace) -> int:
    builder = Builder()
    if not _prepare(builder, args):
        return 1
    assert builder.config is not None
    show_config(builder.config)
    log("SUCCESS", "Template validated successfully")
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    builder = Builder()
    if not _prepare(builder, args, force=args.force, debug=args.debug):
        return 1

    def _request_cancel(signum, frame):
        sig_name = signal.Signals(signum).name
        log("WARN", f"{sig_name} received, cancelling build")
        builder.cancel()

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    try:
        artifact = builder.run()
    except BuildCancelled as exc:
        log("WARN", str(exc))
        return 1
    except BuildError as exc:
        log("ERROR", f"Build failed: {exc}")
        return 1
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)

    log("SUCCESS", f"Build finished. {artifact}")
    for path in artifact.files:
        print(f"  {path}")

    if args.box:
        try:
            package_box(artifact, Path(args.box))
        except (BuildError, OSError) as exc:
            log("ERROR", f"Failed to package Vagrant box: {exc}")
            return 1
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    binary = args.hyve_binary or default_hyve_binary()
    if not binary:
        log("ERROR", "No default hypervisor for this OS; pass --hyve-binary")
        return 1
    try:
        driver = new_driver(binary)
        try:
            print(driver.version())
        finally:
            driver.close()
    except BuildError as exc:
        log("ERROR", str(exc))
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="hyvebuild", description="Build machine images with bhyve/xhyve")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Check a build template and show the resolved configuration")
    validate.add_argument("template", help="Path to the YAML build template")
    validate.add_argument("--name", default="hyve", help="Build name used for default paths (default: hyve)")
    validate.set_defaults(func=cmd_validate)

    build = sub.add_parser("build", help="Run a build")
    build.add_argument("template", help="Path to the YAML build template")
    build.add_argument("--name", default="hyve", help="Build name used for default paths (default: hyve)")
    build.add_argument("--force", action="store_true", help="Delete an existing output directory")
    build.add_argument("--debug", action="store_true", help="Pause before each build step")
    build.add_argument("--box", metavar="PATH", help="Also package the result as a Vagrant box")
    build.set_defaults(func=cmd_build)

    version = sub.add_parser("version", help="Print the installed bhyve/xhyve version")
    version.add_argument("--hyve-binary", default=None, help="Hypervisor binary (default: per OS)")
    version.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)
    return args.func(args)
