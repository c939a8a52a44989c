"""Sink implementations for the downstream ingestion endpoint."""

from .factory import build_sink
from .file_sink import FileSink
from .http_sink import HttpSink
from .sqlite_sink import SQLiteSink

__all__ = ["FileSink", "HttpSink", "SQLiteSink", "build_sink"]
