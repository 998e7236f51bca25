import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@dataclass
class ConsoleSink:
    stream: str = "stderr"

    def register(self, level: str) -> str:
        target = sys.stdout if self.stream == "stdout" else sys.stderr
        logger.add(target, level=level, format=_CONSOLE_FORMAT)
        return f"console ({'stdout' if target is sys.stdout else 'stderr'}, {level})"


@dataclass
class FileSink:
    path: str = ".agent_loop/agent_loop.log"
    rotation: str = "10 MB"
    retention: int = 3
    serialize: bool = False

    def register(self, level: str) -> str:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self.path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self.rotation,
            retention=self.retention,
            serialize=self.serialize,
        )
        return f"file ({self.path}, {'jsonl' if self.serialize else 'text'}, {level})"


_SINK_TYPES: dict[str, type] = {"console": ConsoleSink, "file": FileSink}

# The REPL owns stdout, so the console only gets warnings by default.
DEFAULT_SINKS: list[dict[str, Any]] = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def setup_logging(level: str = "INFO", consumers: list[dict[str, Any]] | None = None) -> list[str]:
    """Replace loguru's sinks with the configured ones.

    Each entry names a ``type`` (``console`` or ``file``), an optional
    ``level`` overriding the global one, and sink options. Returns a
    description per registered sink.
    """
    logger.remove()
    descriptions: list[str] = []
    for sink_config in DEFAULT_SINKS if consumers is None else consumers:
        sink_type = sink_config.get("type", "")
        sink_cls = _SINK_TYPES.get(sink_type)
        if sink_cls is None:
            logger.warning(f"Unknown log sink type: {sink_type!r}")
            continue
        options = {k: v for k, v in sink_config.items() if k not in ("type", "level")}
        descriptions.append(sink_cls(**options).register(sink_config.get("level", level)))
    return descriptions
