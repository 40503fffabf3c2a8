"""``{{ .Field }}`` interpolation for user supplied strings.

Only two forms are understood: ``{{ .Name }}`` looks ``Name`` up in the
data mapping and ``{{ name }}`` calls a zero-argument function.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, Mapping, Optional

from hyvebuild.exceptions import BuildError

_ACTION_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_FIELD_RE = re.compile(r"^\.([A-Za-z_][A-Za-z0-9_]*)$")
_FUNC_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)$")


def default_functions(build_name: str = "", build_type: str = "") -> Dict[str, Callable[[], Any]]:
    return {
        "build_name": lambda: build_name,
        "build_type": lambda: build_type,
        "timestamp": lambda: str(int(time.time())),
    }


def render(
    template: str,
    data: Optional[Mapping[str, Any]] = None,
    functions: Optional[Mapping[str, Callable[[], Any]]] = None,
) -> str:
    """Render ``template`` or raise BuildError naming the offending action."""
    data = data or {}
    functions = functions or {}

    def _substitute(match: "re.Match[str]") -> str:
        action = match.group(1)
        field = _FIELD_RE.match(action)
        if field:
            name = field.group(1)
            if name not in data:
                raise BuildError(f"template: {template!r}: unknown field .{name}")
            return str(data[name])
        func = _FUNC_RE.match(action)
        if func:
            name = func.group(1)
            if name not in functions:
                raise BuildError(f"template: {template!r}: function {name!r} not defined")
            return str(functions[name]())
        raise BuildError(f"template: {template!r}: cannot evaluate {{{{ {action} }}}}")

    return _ACTION_RE.sub(_substitute, template)
