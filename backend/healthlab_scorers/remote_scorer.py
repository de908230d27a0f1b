from __future__ import annotations

import logging
import os

import httpx

from healthlab_core.models import LabTest

logger = logging.getLogger("healthlab.scorers")


class RemoteScorerError(Exception):
    pass


class HttpSymptomScorer:
    """Delegates relevance scoring to an external HTTP service.

    The service receives ``{"text": ..., "test": {...}}`` and answers
    ``{"score": <0..1>}``.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = (url or os.getenv("HEALTHLAB_SCORER_URL") or "").strip()
        if not self.url:
            raise RemoteScorerError("HEALTHLAB_SCORER_URL is required for the remote scorer.")
        self.api_key = (api_key if api_key is not None else os.getenv("HEALTHLAB_SCORER_API_KEY") or "").strip()
        self.timeout = timeout if timeout is not None else float(os.getenv("HEALTHLAB_SCORER_TIMEOUT_SECONDS", "1.5"))
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.Client(timeout=self.timeout, headers=headers, transport=transport)

    def score(self, text: str, test: LabTest) -> float:
        try:
            response = self._client.post(self.url, json={"text": text, "test": test.as_dict()})
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise RemoteScorerError(f"Scorer timed out for {test.code}") from exc
        except httpx.HTTPError as exc:
            raise RemoteScorerError(f"Scorer request failed for {test.code}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteScorerError("Scorer returned invalid JSON.") from exc
        raw = payload.get("score") if isinstance(payload, dict) else None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            logger.debug("Scorer returned no usable score for %s: %r", test.code, raw)
            return 0.0
        return max(0.0, min(1.0, value))

    def close(self) -> None:
        self._client.close()
