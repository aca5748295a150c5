"""HTTP client for the remote PostgREST backend.

This module provides:
- RemoteClient: httpx client for the library tables and the system log RPCs
- Incremental fetch of changed rows ordered by (updated_at, id)
- Version-conditional writes that report stale versions as rejections
- Status code and transport error mapping to the sync error taxonomy
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from shelfsync.client.sync.types import RemoteRejectionError, TransientNetworkError
from shelfsync.core.config import RemoteConfig

logger = logging.getLogger(__name__)

# Statuses worth retrying: throttling and server-side failures.
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class APIError(Exception):
    """Base exception for non-retryable API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


def _iso(value: datetime) -> str:
    return value.isoformat()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


class RemoteClient:
    """HTTP client for the remote library database."""

    def __init__(self, config: RemoteConfig) -> None:
        """Initialize the remote client.

        Args:
            config: Remote connection configuration.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.rest_url,
            timeout=httpx.Timeout(config.timeout, connect=config.connect_timeout),
            verify=config.verify_ssl,
            headers={
                "apikey": config.api_key,
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
        )

    @property
    def config(self) -> RemoteConfig:
        """Connection configuration."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> RemoteClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to TransientNetworkError."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e
        return response

    def _handle_response(
        self,
        response: httpx.Response,
        table: str | None = None,
        record_id: str | None = None,
    ) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(_error_detail(response), status)
        if status == 409 and table is not None and record_id is not None:
            raise RemoteRejectionError(
                table, record_id, _error_detail(response), status_code=status
            )
        if status in RETRYABLE_STATUS_CODES:
            raise TransientNetworkError(
                f"Remote returned {status}: {_error_detail(response)}", status
            )
        if status >= 400:
            raise APIError(_error_detail(response), status)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the remote is reachable.

        Returns:
            True if the REST endpoint answered without a server error.
        """
        try:
            response = self._client.head("/")
        except httpx.RequestError:
            return False
        return response.status_code < 500

    # === Table operations ===

    def fetch_changes(
        self,
        table: str,
        since: datetime,
        limit: int,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch one page of rows changed since a timestamp.

        Without ``after_id`` the page starts at rows whose ``updated_at`` is
        at or after ``since``, so rows sharing the cursor timestamp are seen
        again (replays are harmless). With ``after_id`` the page continues
        strictly after the (since, after_id) key of the previous page.

        Args:
            table: Remote table.
            since: Lower bound on ``updated_at``.
            limit: Maximum number of rows.
            after_id: Id of the last row of the previous page.

        Returns:
            Rows ordered by (updated_at, id).
        """
        params: dict[str, str | int] = {
            "select": "*",
            "order": "updated_at.asc,id.asc",
            "limit": limit,
        }
        if after_id is None:
            params["updated_at"] = f"gte.{_iso(since)}"
        else:
            ts = _iso(since)
            params["or"] = f"(updated_at.gt.{ts},and(updated_at.eq.{ts},id.gt.{after_id}))"

        response = self._handle_response(self._request("GET", f"/{table}", params=params))
        rows = response.json()
        logger.debug("Fetched %d %s rows since %s", len(rows), table, _iso(since))
        return list(rows)

    def fetch_record(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Fetch a single row by id.

        Returns:
            The row, or None if the remote has no row with this id.
        """
        response = self._handle_response(
            self._request(
                "GET", f"/{table}", params={"select": "*", "id": f"eq.{record_id}"}
            )
        )
        rows = response.json()
        return rows[0] if rows else None

    def insert_record(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a row.

        Raises:
            RemoteRejectionError: If a row with this id already exists.
        """
        response = self._handle_response(
            self._request(
                "POST",
                f"/{table}",
                json=payload,
                headers={"Prefer": "return=representation"},
            ),
            table,
            payload["id"],
        )
        return self._single(response, table, payload["id"])

    def update_record(
        self,
        table: str,
        record_id: str,
        payload: dict[str, Any],
        updated_before: datetime,
    ) -> dict[str, Any]:
        """Update a row only if the remote version is older than ours.

        Args:
            table: Remote table.
            record_id: Row id.
            payload: Full local record.
            updated_before: Version bound; the remote row must be older.

        Returns:
            The row as stored by the remote.

        Raises:
            RemoteRejectionError: If no row matched (stale version or missing).
        """
        response = self._handle_response(
            self._request(
                "PATCH",
                f"/{table}",
                params={"id": f"eq.{record_id}", "updated_at": f"lt.{_iso(updated_before)}"},
                json=payload,
                headers={"Prefer": "return=representation"},
            ),
            table,
            record_id,
        )
        return self._single(response, table, record_id)

    def delete_record(
        self, table: str, record_id: str, updated_before: datetime
    ) -> None:
        """Delete a row only if the remote version is older than ``updated_before``.

        Raises:
            RemoteRejectionError: If no row matched (stale version or missing).
        """
        response = self._handle_response(
            self._request(
                "DELETE",
                f"/{table}",
                params={"id": f"eq.{record_id}", "updated_at": f"lt.{_iso(updated_before)}"},
                headers={"Prefer": "return=representation"},
            ),
            table,
            record_id,
        )
        if not response.json():
            raise RemoteRejectionError(table, record_id, "no row deleted")

    # === System log ===

    def log_system_event(
        self,
        action: str,
        description: str,
        severity: str,
        component: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record an event in the remote system log.

        Returns:
            Id of the remote event.
        """
        body: dict[str, Any] = {
            "p_action": action,
            "p_description": description,
            "p_severity": severity,
            "p_component": component,
        }
        if metadata is not None:
            body["p_metadata"] = metadata
        response = self._handle_response(
            self._request("POST", "/rpc/log_system_event", json=body)
        )
        return str(response.json())

    def clean_duplicate_logs(self) -> int:
        """Ask the remote to collapse duplicate system log entries.

        Returns:
            Number of entries the remote reports as removed (0 if unknown).
        """
        response = self._handle_response(
            self._request("POST", "/rpc/clean_duplicate_logs", json={})
        )
        if not response.content:
            return 0
        result = response.json()
        return result if isinstance(result, int) else 0

    def _single(
        self, response: httpx.Response, table: str, record_id: str
    ) -> dict[str, Any]:
        rows = response.json()
        if not rows:
            raise RemoteRejectionError(table, record_id)
        return dict(rows[0])
