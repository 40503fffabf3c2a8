"""bhyve/xhyve process supervision for hyvebuild."""

from __future__ import annotations

import errno
import os
import pty
import shutil
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import IO, Callable, Optional

from hyvebuild.constants import (
    COM1_RE,
    EXIT_SENTINEL,
    LAUNCH_GRACE_PERIOD,
    QEMU_IMG_BINARY,
    VERSION_RE,
)
from hyvebuild.exceptions import AlreadyRunningError, BuildError
from hyvebuild.pipeline import CancelToken
from hyvebuild.utils import get_env_float, log, run


def parse_tty(text: str) -> Optional[str]:
    """Return the serial device announced by ``COM1 connected to <dev>``."""
    match = COM1_RE.search(text)
    return match.group(1) if match else None


def parse_version(text: str) -> Optional[str]:
    """Return the ``bhyve: X.Y.Z`` / ``xhyve: X.Y.Z`` part of ``-v`` output."""
    match = VERSION_RE.search(text.strip())
    return match.group(0) if match else None


def log_reader(
    name: str,
    stream: IO[bytes],
    on_first_line: Optional[Callable[[str], None]] = None,
) -> None:
    """Log every line of ``stream`` until it closes.

    ``on_first_line`` receives the first line read, before it is logged.
    """
    try:
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if on_first_line is not None:
                on_first_line(line)
                on_first_line = None
            if line:
                log("DEBUG", f"{name}: {line}")
    except OSError as exc:
        # A pty master reports EIO once the child side is gone.
        if exc.errno != errno.EIO:
            log("WARN", f"{name}: stream closed ({exc})")
    finally:
        stream.close()


class Driver:
    """Owns the hypervisor process of a single build.

    At most one VM process is live at a time. ``launch`` records it,
    a background watcher forgets it again when it exits, and ``stop``
    kills it.
    """

    def __init__(
        self,
        hyve_path: str,
        qemu_img_path: str,
        grace_period: float = LAUNCH_GRACE_PERIOD,
    ) -> None:
        self.hyve_path = hyve_path
        self.qemu_img_path = qemu_img_path
        self.grace_period = grace_period
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._done: Optional[Future] = None
        self._tty = ""
        self._pool = ThreadPoolExecutor(thread_name_prefix="hyve")

    @property
    def tty(self) -> str:
        return self._tty

    @property
    def running(self) -> bool:
        with self._lock:
            return self._proc is not None

    def launch(self, *args: str) -> None:
        """Start the hypervisor and wait out the grace period.

        Raises BuildError when the process exits with a non-zero status
        before the grace period is over.
        """
        with self._lock:
            if self._proc is not None:
                raise AlreadyRunningError("Existing VM state found")
            log("DEBUG", f"Executing {self.hyve_path}: {list(args)}")
            master_fd, slave_fd = pty.openpty()
            try:
                proc = subprocess.Popen(
                    [self.hyve_path, *args],
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                os.close(master_fd)
                raise BuildError(f"Error starting VM: {exc}")
            finally:
                os.close(slave_fd)
            done = self._pool.submit(self._watch, proc)
            self._proc = proc
            self._done = done

        log("INFO", f"Started bhyve/xhyve. Pid: {proc.pid}")
        deadline = time.monotonic() + self.grace_period
        announced = threading.Event()
        done.add_done_callback(lambda _future: announced.set())

        def _discover_tty(first_line: str) -> None:
            # The first console line announces the pty COM1 was bridged to.
            dev = parse_tty(first_line)
            if dev:
                self._tty = dev
                log("INFO", f"COM1 is connected to: {dev}")
            announced.set()

        try:
            console = os.fdopen(master_fd, "rb")
        except OSError as exc:
            os.close(master_fd)
            proc.kill()
            proc.stderr.close()
            raise BuildError(f"Error starting VM: cannot read the console: {exc}")
        self._pool.submit(log_reader, "bhyve/xhyve stderr", proc.stderr)
        self._pool.submit(log_reader, "bhyve/xhyve stdout", console, _discover_tty)

        if not announced.wait(self.grace_period):
            log("DEBUG", "No console line from bhyve/xhyve yet; COM1 unknown")

        try:
            exit_code = done.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeout:
            return
        if exit_code != 0:
            raise BuildError(
                f"bhyve/xhyve failed to start (exit code {exit_code}). "
                "Please run with LOG_VERBOSE=1 to get more info."
            )
        log("WARN", "bhyve/xhyve exited cleanly right after starting")

    def _watch(self, proc: subprocess.Popen) -> int:
        try:
            returncode: Optional[int] = proc.wait()
        except OSError as exc:
            log("WARN", f"Lost track of bhyve/xhyve process {proc.pid}: {exc}")
            returncode = None
        # Negative return codes mean the process was killed by a signal.
        exit_code = returncode if returncode is not None and returncode >= 0 else EXIT_SENTINEL
        with self._lock:
            if self._proc is proc:
                self._proc = None
                self._done = None
        log("DEBUG", f"bhyve/xhyve process {proc.pid} exited with code {exit_code}")
        return exit_code

    def stop(self) -> None:
        """Kill the VM process, if one is live."""
        with self._lock:
            if self._proc is not None:
                log("INFO", f"Killing Pid: {self._proc.pid}")
                self._proc.kill()

    def wait_for_shutdown(self, cancel: CancelToken) -> bool:
        """Block until the VM exits (True) or ``cancel`` fires first (False)."""
        with self._lock:
            done = self._done
        if done is None:
            return True

        woke = threading.Event()
        done.add_done_callback(lambda _future: woke.set())
        cancel.add_callback(woke.set)
        try:
            woke.wait()
        finally:
            cancel.remove_callback(woke.set)
        return done.done()

    def qemu_img(self, *args: str) -> None:
        log("DEBUG", f"Executing qemu-img: {list(args)}")
        try:
            result = run([self.qemu_img_path, *args], check=False, capture_output=True)
        except OSError as exc:
            raise BuildError(f"QemuImg error: {exc}")
        stdout = result.stdout.strip()
        stderr = result.stderr.strip()
        log("DEBUG", f"stdout: {stdout}")
        log("DEBUG", f"stderr: {stderr}")
        if result.returncode != 0:
            raise BuildError(f"QemuImg error: {stderr}")

    def verify(self) -> None:
        for label, path in (("bhyve/xhyve", self.hyve_path), ("qemu-img", self.qemu_img_path)):
            if not os.path.isfile(path) or not os.access(path, os.X_OK):
                raise BuildError(f"{label} binary is not executable: {path}")

    def version(self) -> str:
        try:
            result = run([self.hyve_path, "-v"], check=False, capture_output=True)
        except OSError as exc:
            raise BuildError(f"Failed to run {self.hyve_path} -v: {exc}")
        output = (result.stdout + result.stderr).strip()
        log("DEBUG", f"bhyve/xhyve -v output: {output}")
        version = parse_version(output)
        if version is None:
            raise BuildError(f"No version found: {output}")
        log("DEBUG", f"bhyve/xhyve version: {version}")
        return version

    def close(self) -> None:
        self._pool.shutdown(wait=False)


def new_driver(hyve_binary: str, grace_period: Optional[float] = None) -> Driver:
    hyve_path = shutil.which(hyve_binary)
    if hyve_path is None:
        raise BuildError(f"{hyve_binary} not found in PATH")
    qemu_img_path = shutil.which(QEMU_IMG_BINARY)
    if qemu_img_path is None:
        raise BuildError(f"{QEMU_IMG_BINARY} not found in PATH")
    if grace_period is None:
        grace_period = get_env_float("HYVEBUILD_LAUNCH_GRACE", LAUNCH_GRACE_PERIOD)

    log("DEBUG", f"bhyve/xhyve path: {hyve_path}, qemu-img path: {qemu_img_path}")
    driver = Driver(hyve_path, qemu_img_path, grace_period=grace_period)
    driver.verify()
    return driver
