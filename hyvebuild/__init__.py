"""hyvebuild package."""

__all__ = [
    "artifact",
    "box",
    "builder",
    "cli",
    "config",
    "constants",
    "driver",
    "exceptions",
    "http_server",
    "models",
    "pipeline",
    "steps",
    "template",
    "typist",
    "utils",
]
