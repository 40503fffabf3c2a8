"""Ordered, cancellable build step execution for hyvebuild."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from hyvebuild.constants import STATE_CANCEL, STATE_CANCELLED, STATE_HALTED
from hyvebuild.utils import log

StateBag = Dict[str, Any]


class StepAction(Enum):
    CONTINUE = "continue"
    HALT = "halt"


class Step:
    """A single build phase.

    ``run`` may read anything earlier steps put into the state and may add
    its own keys. ``cleanup`` runs once the pipeline stops, for every step
    that was started, whether the build succeeded or not.
    """

    name = "step"

    def run(self, state: StateBag) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: StateBag) -> None:
        return None


class CancelToken:
    """Cooperative cancellation flag shared down the call chain."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; True if cancelled."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def linked(self, timeout: Optional[float] = None) -> "CancelToken":
        """Child token cancelled along with this one, or after ``timeout`` seconds.

        Detach it with ``remove_callback(child.cancel)`` once it is done with.
        """
        child = CancelToken()
        self.add_callback(child.cancel)
        if timeout is not None:
            timer = threading.Timer(timeout, child.cancel)
            timer.daemon = True
            timer.start()
            child.add_callback(timer.cancel)
        return child


class Runner:
    """Run steps in order, then clean up every started step in reverse."""

    def __init__(self, steps: List[Step], pause_fn: Optional[Callable[[Step, StateBag], None]] = None) -> None:
        self.steps = list(steps)
        self.pause_fn = pause_fn
        self.token = CancelToken()

    def cancel(self) -> None:
        log("INFO", "Cancelling the step runner...")
        self.token.cancel()

    def run(self, state: StateBag) -> None:
        state[STATE_CANCEL] = self.token
        started: List[Step] = []
        try:
            for step in self.steps:
                if self.token.cancelled:
                    break
                if self.pause_fn is not None:
                    self.pause_fn(step, state)
                    if self.token.cancelled:
                        break
                started.append(step)
                log("DEBUG", f"Running step: {step.name}")
                if step.run(state) is StepAction.HALT:
                    state[STATE_HALTED] = True
                    break
        finally:
            if self.token.cancelled:
                state[STATE_CANCELLED] = True
            for step in reversed(started):
                log("DEBUG", f"Cleaning up step: {step.name}")
                try:
                    step.cleanup(state)
                except Exception as exc:
                    log("ERROR", f"Cleanup of step '{step.name}' failed: {exc}")
