"""The bhyve/xhyve image builder: config, steps and outcome."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from hyvebuild.artifact import Artifact, build_artifact
from hyvebuild.constants import (
    CACHE_DIR,
    STATE_CANCELLED,
    STATE_CONFIG,
    STATE_DISK_FILENAME,
    STATE_DRIVER,
    STATE_ERROR,
    STATE_HALTED,
    STATE_ISO_PATH,
)
from hyvebuild.config import prepare_config
from hyvebuild.driver import Driver, new_driver
from hyvebuild.exceptions import BuildCancelled, BuildError, MultiError
from hyvebuild.models import BuildConfig
from hyvebuild.pipeline import Runner, StateBag, Step
from hyvebuild.steps import (
    StepBootWait,
    StepCreateDisk,
    StepDownload,
    StepHTTPServer,
    StepPrepareOutputDir,
    StepRun,
    StepTypeBootCommand,
    StepWaitForShutdown,
)
from hyvebuild.utils import log


def _debug_pause(step: Step, state: StateBag) -> None:
    input(f"Pausing before step '{step.name}'. Press enter to continue. ")


class Builder:
    def __init__(
        self,
        driver_factory: Callable[[str], Driver] = new_driver,
        pause_fn: Optional[Callable[[Step, StateBag], None]] = None,
        cache_dir: Path = CACHE_DIR,
    ) -> None:
        self.config: Optional[BuildConfig] = None
        self.runner: Optional[Runner] = None
        self._driver_factory = driver_factory
        self._pause_fn = pause_fn
        self._cache_dir = cache_dir
        self._cancel_requested = False

    def prepare(
        self,
        *raws: Mapping[str, Any],
        build_name: str = "hyve",
        force: bool = False,
        debug: bool = False,
        platform: Optional[str] = None,
    ) -> List[str]:
        """Validate the template; returns warnings or raises MultiError."""
        cfg, warnings, errors = prepare_config(
            *raws, build_name=build_name, force=force, debug=debug, platform=platform
        )
        if errors:
            raise MultiError(errors, warnings)
        self.config = cfg
        return warnings

    def steps(self) -> List[Step]:
        cfg = self._require_config()
        return [
            StepDownload(
                urls=cfg.iso_urls,
                checksum=cfg.iso_checksum,
                checksum_type=cfg.iso_checksum_type,
                description="ISO",
                result_key=STATE_ISO_PATH,
                cache_dir=self._cache_dir,
            ),
            StepPrepareOutputDir(),
            StepCreateDisk(),
            StepHTTPServer(),
            StepRun(),
            StepBootWait(),
            StepTypeBootCommand(),
            StepWaitForShutdown(),
        ]

    def run(self) -> Artifact:
        """Run every step; returns the artifact or raises the terminal error."""
        cfg = self._require_config()
        try:
            driver = self._driver_factory(cfg.hyve_binary)
        except BuildError as exc:
            raise BuildError(f"Failed creating bhyve/xhyve driver: {exc}")

        try:
            try:
                log("INFO", f"Hypervisor: {driver.version()}")
            except BuildError as exc:
                log("WARN", f"Could not determine hypervisor version: {exc}")

            state: StateBag = {STATE_CONFIG: cfg, STATE_DRIVER: driver}
            pause_fn = self._pause_fn
            if pause_fn is None and cfg.debug:
                pause_fn = _debug_pause
            self.runner = Runner(self.steps(), pause_fn=pause_fn)
            if self._cancel_requested:
                self.runner.cancel()
            self.runner.run(state)
        finally:
            driver.close()

        if STATE_ERROR in state:
            raise state[STATE_ERROR]
        if state.get(STATE_CANCELLED):
            raise BuildCancelled("Build was cancelled.")
        if state.get(STATE_HALTED):
            raise BuildError("Build was halted.")

        return build_artifact(
            Path(cfg.output_directory),
            disk_name=state[STATE_DISK_FILENAME],
            disk_format=cfg.format,
            disk_size=cfg.disk_size,
            vm_name=cfg.vm_name,
        )

    def cancel(self) -> None:
        self._cancel_requested = True
        if self.runner is not None:
            self.runner.cancel()

    def _require_config(self) -> BuildConfig:
        if self.config is None:
            raise BuildError("Builder.prepare must succeed before the build can run")
        return self.config
