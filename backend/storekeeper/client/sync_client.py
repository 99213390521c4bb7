# Overview: HTTP client that reconciles a local SyncQueue with the server.

from __future__ import annotations

import logging

import httpx

from .sync_queue import PROCESSING, SyncQueue

logger = logging.getLogger(__name__)


class SyncClientError(Exception):
    """Raised when the server cannot be reached or rejects a whole request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SyncClient:
    """
    Push/pull/retry against /api/sync using a bearer token.

    Pass an httpx.Client to control transport and timeouts (tests use
    httpx.MockTransport); otherwise one is created for base_url.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        queue: SyncQueue,
        *,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        batch_size: int = 200,
    ):
        self.queue = queue
        self.batch_size = batch_size
        self.http = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.http.headers["Authorization"] = f"Bearer {token}"

    def close(self) -> None:
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _post(self, path: str, payload: dict) -> dict:
        try:
            response = self.http.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise SyncClientError(f"Request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("error") or response.text
            except ValueError:
                message = response.text
            raise SyncClientError(message, status_code=response.status_code)
        return response.json()

    def push_pending(self) -> dict:
        """
        Push PENDING items in batches.

        Acknowledged items leave the queue; rejected ones become FAILED with
        attempts + 1. A transport failure fails the whole in-flight batch the
        same way and is re-raised.
        """
        pushed = succeeded = 0
        while True:
            batch = self.queue.pending()[: self.batch_size]
            if not batch:
                break
            self.queue.mark_processing(batch)
            try:
                body = self._post(
                    "/api/sync/push",
                    {
                        "items": [item.to_push_payload() for item in batch],
                        "last_sync_timestamp": self.queue.last_sync_timestamp,
                    },
                )
            except SyncClientError as exc:
                for item in batch:
                    if item.status == PROCESSING:
                        self.queue.mark_failed(item, str(exc))
                self.queue.save()
                raise

            for item, result in zip(batch, body.get("results", [])):
                if result.get("status") == "success":
                    self.queue.mark_completed(item)
                    succeeded += 1
                else:
                    self.queue.mark_failed(item, result.get("error") or "Unknown error")
            self.queue.save()
            pushed += len(batch)

        logger.info("Pushed %d sync items (%d succeeded)", pushed, succeeded)
        return {"pushed": pushed, "succeeded": succeeded, "failed": pushed - succeeded}

    def pull(self) -> list[dict]:
        """
        Fetch every change since the stored cursor, following has_more pages.
        The cursor is only advanced once a page has been received.
        """
        changes: list[dict] = []
        while True:
            body = self._post("/api/sync/pull", {"last_sync_timestamp": self.queue.last_sync_timestamp})
            changes.extend(body.get("changes", []))
            self.queue.last_sync_timestamp = body.get("timestamp")
            self.queue.save()
            if not body.get("has_more"):
                break
        return changes

    def retry_failed(self) -> dict:
        """Return retryable FAILED items to PENDING and push them again."""
        reopened = self.queue.reopen_failed()
        if not reopened:
            return {"pushed": 0, "succeeded": 0, "failed": 0}
        return self.push_pending()

    def server_status(self) -> dict:
        try:
            response = self.http.get("/api/sync/status")
        except httpx.HTTPError as exc:
            raise SyncClientError(f"Request to /api/sync/status failed: {exc}") from exc
        if response.status_code >= 400:
            raise SyncClientError(response.text, status_code=response.status_code)
        return response.json()

    def status(self) -> dict:
        return self.queue.status()
