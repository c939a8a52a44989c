"""HTTP sink posting envelopes to the core ingestion service."""

from __future__ import annotations

import httpx

from ...errors import TransientFetchError
from ..collaborators import BaseSink, IngestPayload


class HttpSink(BaseSink):
    """POST each envelope to ``{api_url}/properties/ingest``."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = api_url.rstrip("/") + "/properties/ingest"
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers

    def ingest(self, payload: IngestPayload) -> None:
        try:
            response = self._client.post(
                self.endpoint,
                json=payload.model_dump(mode="json"),
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientFetchError(
                f"Ingest failed for {payload.portal}:{payload.portal_id}: {exc}"
            ) from exc

    def close(self) -> None:
        self._client.close()


__all__ = ["HttpSink"]
