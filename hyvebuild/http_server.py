"""HTTP server handing boot-time files (preseeds, kickstarts) to the guest."""

from __future__ import annotations

import errno
import random
import threading
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional

from hyvebuild.exceptions import BuildError
from hyvebuild.utils import log


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        log("DEBUG", f"http: {self.address_string()} {format % args}")


class BootFileServer:
    """Serve ``directory`` on a random free port between ``port_min`` and ``port_max``."""

    def __init__(self, directory: Path, port_min: int, port_max: int, host: str = "0.0.0.0") -> None:
        self.directory = directory
        self.port_min = port_min
        self.port_max = port_max
        self.host = host
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._server is None:
            return 0
        return self._server.server_address[1]

    def start(self) -> int:
        if not self.directory.is_dir():
            raise BuildError(f"HTTP directory does not exist: {self.directory}")
        handler = partial(_QuietHandler, directory=str(self.directory))
        ports = list(range(self.port_min, self.port_max + 1))
        random.shuffle(ports)
        for port in ports:
            try:
                self._server = ThreadingHTTPServer((self.host, port), handler)
            except OSError as exc:
                if exc.errno in {errno.EADDRINUSE, errno.EACCES}:
                    log("DEBUG", f"Port {port} unavailable: {exc}")
                    continue
                raise BuildError(f"Error starting HTTP server on port {port}: {exc}")
            break
        else:
            raise BuildError(f"No free port between {self.port_min} and {self.port_max} for the HTTP server")

        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="hyve-http", daemon=True)
        self._thread.start()
        return self.port

    def shutdown(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
