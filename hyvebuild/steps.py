"""Build steps for the bhyve/xhyve builder.

Each step documents the state keys it reads and produces. Steps never
raise for expected failures: they store a BuildError under ``error``,
log it and halt the pipeline.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

from hyvebuild.constants import (
    CACHE_DIR,
    SERIAL_BAUD,
    STATE_CANCEL,
    STATE_CANCELLED,
    STATE_CONFIG,
    STATE_DISK_FILENAME,
    STATE_DRIVER,
    STATE_ERROR,
    STATE_HALTED,
    STATE_HTTP_IP,
    STATE_HTTP_PORT,
    STATE_ISO_PATH,
)
from hyvebuild.exceptions import BuildError
from hyvebuild.http_server import BootFileServer
from hyvebuild.models import BuildConfig
from hyvebuild.pipeline import StateBag, Step, StepAction
from hyvebuild.template import render
from hyvebuild.typist import SerialPort, parse_boot_command, type_token
from hyvebuild.utils import download_iso, ensure_directory, format_duration, log


def halt(state: StateBag, message: str) -> StepAction:
    err = BuildError(message)
    state[STATE_ERROR] = err
    log("ERROR", message)
    return StepAction.HALT


class StepDownload(Step):
    """Fetch the install ISO.

    Produces: ``result_key`` (path of the verified local file).
    """

    name = "download"

    def __init__(
        self,
        urls: List[str],
        checksum: str,
        checksum_type: str,
        description: str = "ISO",
        result_key: str = STATE_ISO_PATH,
        cache_dir: Path = CACHE_DIR,
    ) -> None:
        self.urls = list(urls)
        self.checksum = checksum
        self.checksum_type = checksum_type
        self.description = description
        self.result_key = result_key
        self.cache_dir = cache_dir

    def run(self, state: StateBag) -> StepAction:
        log("INFO", f"Retrieving {self.description}")
        try:
            path = download_iso(
                self.urls,
                self.checksum,
                self.checksum_type,
                self.cache_dir,
                label=f"Downloading {self.description}",
            )
        except BuildError as exc:
            return halt(state, f"Error downloading {self.description}: {exc}")
        state[self.result_key] = str(path)
        return StepAction.CONTINUE


class StepPrepareOutputDir(Step):
    """Create the output directory, removing it again if the build fails."""

    name = "prepare-output-dir"

    def __init__(self) -> None:
        self._created = False

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        out = Path(cfg.output_directory)
        try:
            if out.exists() and cfg.force:
                log("INFO", "Deleting previous output directory...")
                shutil.rmtree(out)
            ensure_directory(out)
        except OSError as exc:
            return halt(state, f"Error preparing output directory: {exc}")
        self._created = True
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if not self._created:
            return
        if not (state.get(STATE_CANCELLED) or state.get(STATE_HALTED)):
            return
        cfg: BuildConfig = state[STATE_CONFIG]
        log("INFO", "Deleting output directory...")
        try:
            shutil.rmtree(cfg.output_directory)
        except OSError as exc:
            log("ERROR", f"Error removing output dir: {exc}")


class StepCreateDisk(Step):
    """Create the blank target disk.

    Produces: ``disk_filename`` (file name inside the output directory).
    """

    name = "create-disk"

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        driver = state[STATE_DRIVER]
        name = cfg.disk_filename
        path = Path(cfg.output_directory) / name

        log("INFO", "Creating hard drive...")
        try:
            driver.qemu_img("create", "-f", cfg.format, str(path), f"{cfg.disk_size}M")
        except BuildError as exc:
            return halt(state, f"Error creating hard drive: {exc}")
        state[STATE_DISK_FILENAME] = name
        return StepAction.CONTINUE


class StepHTTPServer(Step):
    """Serve ``http_directory`` to the guest while it installs.

    Produces: ``http_port`` (0 when nothing is served) and ``http_ip``.
    """

    name = "http-server"

    def __init__(self) -> None:
        self.server: Optional[BootFileServer] = None

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        state[STATE_HTTP_IP] = cfg.http_ip
        if not cfg.http_directory:
            log("INFO", "No HTTP directory configured; not starting HTTP server")
            state[STATE_HTTP_PORT] = 0
            return StepAction.CONTINUE

        self.server = BootFileServer(Path(cfg.http_directory), cfg.http_port_min, cfg.http_port_max)
        try:
            port = self.server.start()
        except BuildError as exc:
            self.server = None
            return halt(state, f"Error starting HTTP server: {exc}")
        log("INFO", f"Starting HTTP server on port {port}")
        state[STATE_HTTP_PORT] = port
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if self.server is not None:
            self.server.shutdown()
            self.server = None


def hyve_args(cfg: BuildConfig, iso_path: str, disk_filename: str, http_port: int, http_ip: str) -> List[str]:
    """Assemble the bhyve/xhyve command line, user ``hyveargs`` last."""
    disk_path = str(Path(cfg.output_directory) / disk_filename)

    args = ["-A"]  # ACPI
    if cfg.memory_size:
        args += ["-m", cfg.memory_size]
    if cfg.cpus:
        args += ["-c", str(cfg.cpus)]
    args += ["-s", "0:0,hostbridge", "-s", "31,lpc"]
    # Bridge COM1 to a fresh pty; its path is announced on stdout.
    args += ["-l", "com1,autopty"]
    args += ["-s", f"2:0,{cfg.net_device}"]
    args += ["-s", f"3,ahci-cd,{iso_path}"]
    args += ["-s", f"4,virtio-blk,{disk_path}"]
    args += ["-f", f'kexec,{cfg.linux_kernel},{cfg.linux_initrd},"{cfg.kernel_arguments}"']

    if cfg.hyveargs:
        log("INFO", "Overriding defaults bhyve/xhyve arguments with hyveargs...")
        data = {
            "HTTPIP": http_ip,
            "HTTPPort": http_port,
            "HTTPDir": cfg.http_directory,
            "OutputDir": cfg.output_directory,
            "Name": cfg.vm_name,
        }
        args += [render(arg, data) for arg in cfg.hyveargs]
    return args


class StepRun(Step):
    """Launch the VM.

    Reads: ``iso_path``, ``disk_filename``, ``http_port``.
    """

    name = "run"

    def __init__(self, message: str = "Starting VM, booting from CD-ROM") -> None:
        self.message = message

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        driver = state[STATE_DRIVER]
        log("INFO", self.message)

        try:
            command = hyve_args(
                cfg,
                state[STATE_ISO_PATH],
                state[STATE_DISK_FILENAME],
                state[STATE_HTTP_PORT],
                state.get(STATE_HTTP_IP, cfg.http_ip),
            )
        except BuildError as exc:
            return halt(state, f"Error processing hyveargs: {exc}")

        try:
            driver.launch(*command)
        except BuildError as exc:
            return halt(state, f"Error launching VM: {exc}")
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        driver = state[STATE_DRIVER]
        try:
            driver.stop()
        except OSError as exc:
            log("ERROR", f"Error shutting down VM: {exc}")


class StepBootWait(Step):
    name = "boot-wait"

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        if cfg.boot_wait > 0:
            log("INFO", f"Waiting {format_duration(cfg.boot_wait)} for boot...")
            if state[STATE_CANCEL].wait(cfg.boot_wait):
                return StepAction.HALT
        return StepAction.CONTINUE


class StepTypeBootCommand(Step):
    """Type ``boot_command`` into COM1.

    Reads: ``http_port``, ``http_ip``.
    """

    name = "type-boot-command"

    def __init__(self) -> None:
        self.com1: Optional[SerialPort] = None

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        driver = state[STATE_DRIVER]
        cancel = state[STATE_CANCEL]

        if not cfg.boot_command:
            return StepAction.CONTINUE

        tty = driver.tty
        if not tty:
            return halt(state, "No serial device was announced for COM1; cannot type the boot command")
        log("INFO", f"Connecting to VM via serial port (COM1): {tty}")
        try:
            self.com1 = SerialPort(tty, baudrate=SERIAL_BAUD)
        except OSError as exc:
            return halt(state, f"Error connecting to {tty}: {exc}")

        data = {
            "HTTPIP": state.get(STATE_HTTP_IP, cfg.http_ip),
            "HTTPPort": state[STATE_HTTP_PORT],
            "Name": cfg.vm_name,
        }

        log("INFO", "Typing the boot command over serial...")
        for command in cfg.boot_command:
            try:
                rendered = render(command, data)
            except BuildError as exc:
                return halt(state, f"Error preparing boot command: {exc}")

            for token in parse_boot_command(rendered):
                if cancel.cancelled:
                    return StepAction.HALT
                try:
                    type_token(self.com1, token)
                except OSError as exc:
                    return halt(state, f"Error typing boot command: {exc}")
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if self.com1 is not None:
            self.com1.close()
            self.com1 = None


class StepWaitForShutdown(Step):
    """Wait for the installer to power the VM off."""

    name = "wait-for-shutdown"

    def run(self, state: StateBag) -> StepAction:
        cfg: BuildConfig = state[STATE_CONFIG]
        driver = state[STATE_DRIVER]
        cancel = state[STATE_CANCEL]

        timeout = cfg.shutdown_timeout if cfg.shutdown_timeout > 0 else None
        log("INFO", "Waiting for VM to shut down...")
        stop = cancel.linked(timeout)
        try:
            if driver.wait_for_shutdown(stop):
                log("INFO", "VM shut down.")
                return StepAction.CONTINUE
        finally:
            cancel.remove_callback(stop.cancel)
            stop.cancel()
        if cancel.cancelled:
            return StepAction.HALT
        return halt(state, "Timeout while waiting for machine to shut down.")
