from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
from pathlib import Path
import time
from typing import Any
from urllib.parse import quote

import httpx

from .app_logging import LOGGER_NAME, log_with_fields
from .models import UploadResult

USER_AGENT = "gridshot/0.1 (+https://testgrid.k8s.io)"


class NetworkError(RuntimeError):
    def __init__(self, method: str, url: str, attempts: int, cause: Exception) -> None:
        super().__init__(f"{method} {url} failed after {attempts} attempt(s): {cause}")
        self.method = method
        self.url = url
        self.attempts = attempts


class ResponseError(ValueError):
    pass


class RetryingClient:
    """httpx client that retries transport errors and non-2xx responses.

    ``retry_count`` is the number of additional attempts, so a call is tried at
    most ``retry_count + 1`` times with ``retry_delay`` seconds between tries.
    Retries do not distinguish idempotent from non-idempotent requests.
    """

    def __init__(
        self,
        *,
        retry_count: int = 3,
        retry_delay: float = 2.0,
        timeout_seconds: float = 60.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def request(
        self,
        method: str,
        url: str,
        *,
        log_fields: Mapping[str, object] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        attempts = self.retry_count + 1
        fields = dict(log_fields or {})
        for attempt in range(1, attempts):
            try:
                return self._attempt(method, url, attempt, attempts, fields, **kwargs)
            except httpx.HTTPError:
                self._sleep(self.retry_delay)
        try:
            return self._attempt(method, url, attempts, attempts, fields, **kwargs)
        except httpx.HTTPError as exc:
            raise NetworkError(method, url, attempts, exc) from exc

    def _attempt(
        self,
        method: str,
        url: str,
        attempt: int,
        attempts: int,
        fields: dict[str, object],
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "http_attempt_failed",
                **fields,
                method=method,
                url=url,
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
            raise

    def get(self, url: str, *, log_fields: Mapping[str, object] | None = None, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, log_fields=log_fields, **kwargs)

    def post(self, url: str, *, log_fields: Mapping[str, object] | None = None, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, log_fields=log_fields, **kwargs)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> RetryingClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class StatusService:
    """Per-board test summaries from TestGrid."""

    def __init__(self, client: RetryingClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    def summary_url(self, board: str) -> str:
        return f"{self.base_url}/{board}/summary"

    def summary(self, board: str) -> dict[str, dict[str, Any]]:
        response = self.client.get(self.summary_url(board))
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponseError(f"summary for {board} is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ResponseError(f"summary for {board} must be a JSON object")
        return {
            str(test): entry
            for test, entry in payload.items()
            if isinstance(entry, dict)
        }


class RenderService:
    """Headless browser screenshots of an arbitrary URL."""

    def __init__(self, client: RetryingClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    def render_url(self, target_url: str) -> str:
        return f"{self.base_url}/{quote(target_url, safe='')}"

    def render(
        self,
        target_url: str,
        width: int,
        height: int,
        *,
        log_fields: Mapping[str, object] | None = None,
    ) -> bytes:
        response = self.client.get(
            self.render_url(target_url),
            params={"width": width, "height": height},
            log_fields=log_fields,
        )
        if not response.content:
            raise ResponseError(f"render service returned no image for {target_url}")
        return response.content


class UploadService:
    """Image hosting; returns the public URL of an uploaded file."""

    def __init__(self, client: RetryingClient, upload_url: str, user_key: str) -> None:
        self.client = client
        self.upload_url = upload_url
        self.user_key = user_key

    def upload(
        self,
        image_path: Path,
        title: str,
        *,
        log_fields: Mapping[str, object] | None = None,
    ) -> UploadResult:
        with image_path.open("rb") as handle:
            image = handle.read()
        response = self.client.post(
            self.upload_url,
            data={"userkey": self.user_key, "title": title},
            files={"file": (image_path.name, image, "image/png")},
            log_fields=log_fields,
        )
        raw_metadata = response.text
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponseError(f"upload response is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ResponseError("upload response must be a JSON object")
        image_url = payload.get("image")
        if not isinstance(image_url, str) or not image_url:
            raise ResponseError(f"upload response has no `image` field: {raw_metadata}")
        return UploadResult(public_url=image_url, raw_metadata=raw_metadata)
