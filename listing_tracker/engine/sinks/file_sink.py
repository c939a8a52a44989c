"""JSON-lines file sink."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock

from ..collaborators import BaseSink, IngestPayload


class FileSink(BaseSink):
    """Append ingest envelopes to a per-portal ``.jsonl`` file."""

    def __init__(self, output_dir: Path, portal: str, run_tag: str | None = None) -> None:
        self.output_dir = output_dir
        self.portal = portal
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.run_tag = run_tag or datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        slug = re.sub(r"[^0-9A-Za-z_-]+", "_", portal.strip()) or "portal"
        self.path = self.output_dir / f"{slug}-{self.run_tag}.jsonl"
        self._file = self.path.open("a", encoding="utf-8")
        self._lock = Lock()

    def ingest(self, payload: IngestPayload) -> None:
        line = json.dumps(payload.model_dump(mode="json"), ensure_ascii=False)
        with self._lock:
            self._file.write(line)
            self._file.write("\n")

    def flush(self) -> None:
        with self._lock:
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


__all__ = ["FileSink"]
