"""Loguru sink configuration driven by the ``LogConsumers`` config entries.

Each entry names a sink ``type`` plus its options, for example::

    [{"type": "console"}, {"type": "file", "path": "logs/open_core.log", "level": "DEBUG"}]
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@dataclass
class ConsoleSink:
    stream: str = "stderr"

    def add(self, level: str) -> str:
        target = sys.stdout if self.stream == "stdout" else sys.stderr
        logger.add(target, level=level, format=_CONSOLE_FORMAT)
        return f"console ({'stdout' if target is sys.stdout else 'stderr'}, {level})"


@dataclass
class FileSink:
    path: str = "open_core.log"
    rotation: str = "10 MB"
    retention: int = 3
    serialize: bool = False

    def add(self, level: str) -> str:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self.path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self.rotation,
            retention=self.retention,
            serialize=self.serialize,
        )
        kind = "json file" if self.serialize else "file"
        return f"{kind} ({self.path}, {level})"


_SINK_TYPES: dict[str, type] = {
    "console": ConsoleSink,
    "file": FileSink,
}


def setup_logging(level: str = "INFO", consumers: Iterable[dict[str, Any]] | None = None) -> list[str]:
    """Replace loguru's sinks with the configured ones; returns one description per sink."""
    logger.remove()
    descriptions: list[str] = []
    for entry in consumers if consumers is not None else ({"type": "console"},):
        sink_type = entry.get("type", "")
        sink_cls = _SINK_TYPES.get(sink_type)
        if sink_cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue
        options = {k: v for k, v in entry.items() if k not in ("type", "level")}
        descriptions.append(sink_cls(**options).add(str(entry.get("level", level)).upper()))
    return descriptions
