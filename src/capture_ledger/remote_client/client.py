"""
Remote document store API client implementation.

Endpoints:
- POST   /api/v1/documents                 create (Idempotency-Key header)
- PUT    /api/v1/documents/{id}            update with expected_revision
- DELETE /api/v1/documents/{id}            delete with expected_revision
- GET    /api/v1/documents/{id}            fetch (tombstones have deleted=true)
- GET    /api/v1/documents?updated_since=  change feed
- GET    /api/v1/health                    connectivity probe
"""

import json
import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import CaptureLedgerError, ErrorCategory
from ..schemas.records import RemoteDocument

logger = logging.getLogger(__name__)


class RemoteStoreError(CaptureLedgerError):
    """Base exception for remote store client errors."""

    pass


class RemoteConnectionError(RemoteStoreError):
    """Failed to connect to the remote store (network partition, DNS, refused)."""

    category = ErrorCategory.TRANSIENT


class RemoteTimeoutError(RemoteStoreError):
    """Remote store accepted the connection but did not answer in time."""

    category = ErrorCategory.TRANSIENT


class RemoteAPIError(RemoteStoreError):
    """API returned an error response.

    Server errors and rate limiting are transient; other client errors are
    permanent.
    """

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        if status_code >= 500 or status_code == 429:
            self.category = ErrorCategory.TRANSIENT
        super().__init__(f"Remote API error {status_code}: {message}")


class RemoteConflictError(RemoteAPIError):
    """Write rejected: expected_revision is stale. Carries the current document."""

    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        current: RemoteDocument | None = None,
        response_body: str | None = None,
    ):
        self.current = current
        super().__init__(409, message, response_body)


class RemoteGoneError(RemoteAPIError):
    """Document was deleted remotely (tombstone)."""

    category = ErrorCategory.CONFLICT

    def __init__(self, message: str, response_body: str | None = None):
        super().__init__(410, message, response_body)


class RemoteStoreClient:
    """
    Client for the remote document store.

    Features:
    - Idempotent creates via Idempotency-Key
    - Optimistic concurrency on update/delete via expected_revision
    - Transport-level retry with backoff for GET requests only; writes are
      retried by the sync engine, which owns their retry budget
    """

    DEFAULT_TIMEOUT = 30
    DOCUMENTS = "/api/v1/documents"

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize remote store client.

        Args:
            base_url: Remote store URL (e.g., "https://sync.example.com")
            token: Bearer token (empty for none)
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for GET requests
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json_data: dict | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        url = f"{self.base_url}{endpoint}"

        logger.debug("API Request: %s %s", method, url)

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            logger.warning("Connection error to %s: %s", url, e)
            raise RemoteConnectionError(
                f"Failed to connect to remote store at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            logger.warning("Timeout for %s: %s", url, e)
            raise RemoteTimeoutError(f"Request to remote store timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Request error for %s: %s", url, e)
            raise RemoteStoreError(f"Request failed: {e}") from e

        logger.debug("Response status: %s", response.status_code)

        if not response.ok:
            self._raise_for_response(response)

        return response

    def _raise_for_response(self, response: requests.Response) -> None:
        error_body = response.text
        body: dict[str, Any] = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except ValueError:
            pass
        message = body.get("message") or body.get("error") or response.reason or "error"

        if response.status_code == 409:
            current = None
            if isinstance(body.get("current"), dict):
                current = RemoteDocument.from_api(body["current"])
            raise RemoteConflictError(message, current=current, response_body=error_body)
        if response.status_code == 410:
            raise RemoteGoneError(message, response_body=error_body)

        logger.error("API Error %s: %s", response.status_code, message)
        logger.debug("Full response body: %s", error_body)
        raise RemoteAPIError(response.status_code, message, response_body=error_body)

    @staticmethod
    def _document(response: requests.Response) -> RemoteDocument:
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteStoreError(f"Remote store returned non-JSON body: {e}") from e
        if not isinstance(payload, dict) or "id" not in payload:
            raise RemoteStoreError(f"Unexpected document payload: {json.dumps(payload)[:200]}")
        return RemoteDocument.from_api(payload)

    def test_connection(self) -> bool:
        """Probe the remote store. True if it answered healthy."""
        try:
            self._request("GET", "/api/v1/health")
            return True
        except RemoteStoreError:
            return False

    def create_document(self, data: dict[str, Any], idempotency_key: str) -> RemoteDocument:
        """
        Create a document.

        Repeating a create with the same idempotency key returns the document
        created the first time instead of a duplicate.

        Raises:
            RemoteConnectionError: Remote unreachable
            RemoteAPIError: API returned an error
        """
        response = self._request(
            "POST",
            self.DOCUMENTS,
            json_data={"data": data},
            headers={"Idempotency-Key": idempotency_key},
        )
        document = self._document(response)
        logger.info("Created remote document %s (revision %d)", document.remote_id, document.revision)
        return document

    def update_document(
        self, remote_id: str, data: dict[str, Any], expected_revision: int | None
    ) -> RemoteDocument:
        """
        Replace a document's data.

        Raises:
            RemoteConflictError: expected_revision is stale
            RemoteGoneError: Document was deleted remotely
        """
        body: dict[str, Any] = {"data": data}
        if expected_revision is not None:
            body["expected_revision"] = expected_revision
        response = self._request("PUT", f"{self.DOCUMENTS}/{remote_id}", json_data=body)
        document = self._document(response)
        logger.info("Updated remote document %s (revision %d)", remote_id, document.revision)
        return document

    def delete_document(self, remote_id: str, expected_revision: int | None = None) -> bool:
        """
        Delete a document.

        Returns:
            True if deleted now, False if it was already gone (404/410)

        Raises:
            RemoteConflictError: expected_revision is stale
        """
        params = {"expected_revision": expected_revision} if expected_revision is not None else None
        try:
            self._request("DELETE", f"{self.DOCUMENTS}/{remote_id}", params=params)
        except RemoteGoneError:
            logger.info("Remote document %s already deleted", remote_id)
            return False
        except RemoteAPIError as e:
            if e.status_code == 404:
                logger.info("Remote document %s not found, treating delete as done", remote_id)
                return False
            raise
        logger.info("Deleted remote document %s", remote_id)
        return True

    def get_document(self, remote_id: str) -> RemoteDocument | None:
        """Fetch a document; None if it never existed."""
        try:
            response = self._request("GET", f"{self.DOCUMENTS}/{remote_id}")
        except RemoteGoneError:
            return RemoteDocument(remote_id=str(remote_id), revision=0, updated_at="", deleted=True)
        except RemoteAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return self._document(response)

    def list_changes(
        self, updated_since: str | None = None, limit: int = 100
    ) -> tuple[list[RemoteDocument], str | None]:
        """
        Fetch documents changed since a cursor, tombstones included.

        Returns:
            (documents, next cursor). The cursor is None when the server
            returned none.
        """
        params: dict[str, Any] = {"limit": limit}
        if updated_since:
            params["updated_since"] = updated_since
        response = self._request("GET", self.DOCUMENTS, params=params)
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteStoreError(f"Remote store returned non-JSON body: {e}") from e

        documents = [RemoteDocument.from_api(item) for item in payload.get("documents", [])]
        return documents, payload.get("cursor")

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self) -> "RemoteStoreClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()
