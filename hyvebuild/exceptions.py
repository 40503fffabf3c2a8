"""Custom exceptions for hyvebuild."""

from __future__ import annotations

from typing import List, Optional


class BuildError(RuntimeError):
    """Raised on configuration or runtime errors that stop a build."""


class MultiError(BuildError):
    """Every configuration problem found in one pass, reported together."""

    def __init__(self, errors: List[BuildError], warnings: Optional[List[str]] = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        lines = "\n".join(f"  * {err}" for err in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred:\n{lines}")


class BuildCancelled(BuildError):
    """The build was interrupted before producing an artifact."""


class AlreadyRunningError(RuntimeError):
    """A driver was asked to launch while it still owns a live VM process.

    Indicates a step-ordering bug. Not a BuildError: the build path never
    catches it.
    """
