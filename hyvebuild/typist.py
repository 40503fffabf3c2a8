"""Boot command typing over the VM's serial console."""

from __future__ import annotations

import os
import termios
import time
import tty
from typing import List, NamedTuple, Optional, Protocol, Union

from hyvebuild.constants import KEY_SETTLE_DELAY, SERIAL_BAUD, WAIT_DIRECTIVES
from hyvebuild.utils import log


class SerialDevice(Protocol):
    def write(self, data: bytes) -> int: ...


class SerialPort:
    """Raw, write-mostly handle on a serial character device such as a COM1 pty."""

    def __init__(self, path: str, baudrate: int = SERIAL_BAUD) -> None:
        self.path = path
        speed = getattr(termios, f"B{baudrate}", None)
        if speed is None:
            raise ValueError(f"unsupported baud rate: {baudrate}")
        self._fd: Optional[int] = os.open(path, os.O_RDWR | os.O_NOCTTY)
        try:
            tty.setraw(self._fd)
            attrs = termios.tcgetattr(self._fd)
            attrs[4] = attrs[5] = speed
            termios.tcsetattr(self._fd, termios.TCSANOW, attrs)
        except termios.error as exc:
            self.close()
            raise OSError(f"{path} is not a serial device: {exc}")

    def write(self, data: bytes) -> int:
        if self._fd is None:
            raise OSError(f"{self.path} is closed")
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]
        return len(data)

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


class Key(NamedTuple):
    char: str

    @property
    def code(self) -> int:
        # The console takes one byte per key.
        return ord(self.char) & 0xFF


class Wait(NamedTuple):
    directive: str
    seconds: int


BootToken = Union[Key, Wait]


def parse_boot_command(text: str) -> List[BootToken]:
    """Split a boot command into keys and ``<wait>``/``<wait5>``/``<wait10>`` pauses."""
    tokens: List[BootToken] = []
    pos = 0
    while pos < len(text):
        for directive, seconds in WAIT_DIRECTIVES:
            if text.startswith(directive, pos):
                tokens.append(Wait(directive, seconds))
                pos += len(directive)
                break
        else:
            tokens.append(Key(text[pos]))
            pos += 1
    return tokens


def type_token(device: SerialDevice, token: BootToken) -> None:
    """Send one token, then give the console time to catch up."""
    if isinstance(token, Wait):
        log("DEBUG", f"Special code '{token.directive}' found, sleeping {token.seconds} second(s)")
        time.sleep(token.seconds)
    else:
        log("DEBUG", f"Sending char {token.char!r}, code {token.code}")
        device.write(bytes([token.code]))
    time.sleep(KEY_SETTLE_DELAY)


def type_string(device: SerialDevice, text: str) -> None:
    for token in parse_boot_command(text):
        type_token(device, token)
