"""Build the configured sink for a portal."""

from __future__ import annotations

from pathlib import Path

from ...config import PortalConfig
from ..collaborators import BaseSink
from .file_sink import FileSink
from .http_sink import HttpSink
from .sqlite_sink import SQLiteSink


def build_sink(portal: PortalConfig, outputs_dir: Path, run_tag: str | None = None) -> BaseSink:
    sink = portal.sink
    if sink.type == "http":
        return HttpSink(sink.api_url or "", api_key=sink.api_key, timeout=sink.timeout_seconds)
    if sink.type == "sqlite":
        path = sink.path or outputs_dir / f"{portal.portal}.db"
        if not path.is_absolute():
            path = outputs_dir / path
        return SQLiteSink(path)
    directory = sink.path or outputs_dir
    if not directory.is_absolute():
        directory = outputs_dir / directory
    return FileSink(directory, portal.portal, run_tag=run_tag)


__all__ = ["build_sink"]
