"""
HTTP client for the package/scan API (the remote authority).

This module wraps the server's scanning endpoints and, more importantly,
classifies every failure into one of two kinds:

    NetworkError      - timeout, unreachable host, 5xx, 408, 429.
                        Retryable: the executor queues the action.
    ApplicationError  - any other 4xx, or a 2xx body with success=false.
                        Not retryable: surfaced to the operator verbatim.

Every call carries a bounded timeout. Scan actions carry the client's
idempotency token both as an Idempotency-Key header and in the body; the
server short-circuits tokens it has already processed, so a replay is a
no-op rather than a duplicate transition.

Usage:
    client = PackageAPIClient("https://api.example.com", token="...", timeout_seconds=12)

    details = client.fetch_package("PKG-AB12-20240101")
    result = client.submit_action(code, "collect", operator.to_dict(), token, metadata.to_dict())
    bulk = client.submit_bulk(codes, "deliver", operator.to_dict(), metadata.to_dict())
"""

from __future__ import annotations

import logging
from typing import Dict, Any, List, Optional

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from .exceptions import (
    ApplicationError,
    NetworkError,
    PackageNotFoundError,
    RemoteTimeoutError,
)


# Status codes that mean "try again later", not "you asked for something illegal"
RETRYABLE_STATUS_CODES = {408, 425, 429}

# Error codes the server uses when an idempotency token was already processed
ALREADY_PROCESSED_CODES = {"ALREADY_PROCESSED", "DUPLICATE_REQUEST"}

PACKAGE_DETAILS_PATH = "/api/v1/scanning/package_details"
SCAN_ACTION_PATH = "/api/v1/scanning/scan_action"
BULK_SCAN_PATH = "/api/v1/scanning/bulk_scan"
PING_PATH = "/api/v1/ping"


def _error_body_snippet(response: requests.Response, max_chars: int = 200) -> str:
    body = response.text or ""
    compact = " ".join(body.split())
    return compact[:max_chars]


class PackageAPIClient:
    """
    Client for the package API.

    One instance is shared by the executor, sync engine, bulk processor and
    connectivity probe. requests.Session is safe for this use as long as the
    session's headers are not mutated after construction.

    Attributes:
        base_url: Root URL of the package API
        timeout_seconds: Per-call timeout applied to every request
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 12.0,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Root URL of the package API
            token: Bearer token from the authentication collaborator
            timeout_seconds: Bounded timeout for every call
            session: Optional pre-built session (tests inject a mock)
            logger: Logger instance (creates default if not provided)

        Raises:
            ValueError: If base_url is empty or timeout is not positive
        """
        if not base_url:
            raise ValueError("base_url is required")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"
        self._logger = logger or logging.getLogger("scan_station.core.api_client")

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def fetch_package(self, code: str) -> Dict[str, Any]:
        """
        Fetch a package's current record.

        Args:
            code: Normalized package code

        Returns:
            Dict with "package" (server record) and "available_actions"
            (the server's own view; informational only)

        Raises:
            PackageNotFoundError: Server has no such package
            ApplicationError: Server refused the lookup
            NetworkError: Package API unreachable or timed out
        """
        self._logger.debug(f"Fetching package {code}")
        try:
            body = self._request(
                "GET",
                PACKAGE_DETAILS_PATH,
                operation="fetch_package",
                params={"package_code": code},
            )
        except ApplicationError as e:
            if e.status_code == 404 or e.error_code == "PACKAGE_NOT_FOUND":
                raise PackageNotFoundError(code)
            raise

        data = body.get("data") or {}
        package = data.get("package")
        if not isinstance(package, dict):
            raise PackageNotFoundError(code)

        return {
            "package": package,
            "available_actions": data.get("available_actions", []),
        }

    def submit_action(
        self,
        code: str,
        action_type: str,
        operator: Dict[str, Any],
        idempotency_token: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Submit one scan action.

        Args:
            code: Package code
            action_type: Action id (collect, deliver, ...)
            operator: {id, name, role} of the acting operator
            idempotency_token: Client-generated token for at-most-once application
            metadata: Scan metadata bag

        Returns:
            Dict with "new_state", "package" (may be None), "message" and
            "already_processed" (True if the server had seen this token)

        Raises:
            ApplicationError: Server rejected the business rule
            NetworkError: Package API unreachable or timed out
        """
        payload = {
            "package_code": code,
            "action_type": action_type,
            "idempotency_key": idempotency_token,
            "performed_by": operator,
            "metadata": metadata or {},
        }

        self._logger.info(f"Submitting {action_type} for {code} (token={idempotency_token[:8]})")

        try:
            body = self._request(
                "POST",
                SCAN_ACTION_PATH,
                operation="submit_action",
                json=payload,
                headers={"Idempotency-Key": idempotency_token},
            )
        except ApplicationError as e:
            if e.error_code in ALREADY_PROCESSED_CODES:
                self._logger.info(f"Token {idempotency_token[:8]} already processed by server")
                return {
                    "new_state": None,
                    "package": None,
                    "message": e.message,
                    "already_processed": True,
                }
            raise

        data = body.get("data") or {}
        package = data.get("package") if isinstance(data.get("package"), dict) else None
        new_state = data.get("new_state") or (package or {}).get("state")

        return {
            "new_state": new_state,
            "package": package,
            "message": body.get("message", ""),
            "already_processed": bool(data.get("idempotent_replay", False)),
        }

    def submit_bulk(
        self,
        codes: List[str],
        action_type: str,
        operator: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_keys: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Submit one action for many packages in a single request.

        Args:
            codes: Package codes (already normalized and de-duplicated)
            action_type: Action id applied to every code
            operator: {id, name, role} of the acting operator
            metadata: Shared scan metadata
            idempotency_keys: Per-code idempotency tokens {code: token}

        Returns:
            Dict with "results" (list of {package_code, success, message,
            new_state, error_code}) and the server's "summary" (unverified)

        Raises:
            ApplicationError: Server rejected the whole batch
            NetworkError: Package API unreachable or timed out
        """
        bulk_metadata = dict(metadata or {})
        bulk_metadata["bulk_operation"] = True
        payload = {
            "package_codes": list(codes),
            "action_type": action_type,
            "performed_by": operator,
            "metadata": bulk_metadata,
        }
        if idempotency_keys:
            payload["idempotency_keys"] = dict(idempotency_keys)

        self._logger.info(f"Submitting bulk {action_type} for {len(codes)} packages")

        body = self._request("POST", BULK_SCAN_PATH, operation="submit_bulk", json=payload)
        data = body.get("data") or {}
        results = data.get("results")
        if not isinstance(results, list):
            raise ApplicationError(
                "Bulk scan response did not include per-package results",
                error_code="MALFORMED_BULK_RESPONSE",
                operation="submit_bulk",
            )

        return {"results": results, "summary": data.get("summary") or {}}

    def ping(self, timeout_seconds: float = 5.0) -> bool:
        """
        Check whether the package API is reachable.

        Never raises; any failure means "not reachable".
        """
        try:
            response = self._session.get(
                f"{self.base_url}{PING_PATH}",
                timeout=min(timeout_seconds, self.timeout_seconds),
            )
            return response.status_code == 200
        except RequestException as e:
            self._logger.debug(f"Ping failed: {e}")
            return False

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        """
        Perform one request and classify the result.

        Returns:
            Parsed JSON body of a successful response

        Raises:
            RemoteTimeoutError, NetworkError, ApplicationError
        """
        url = f"{self.base_url}{path}"

        try:
            response = self._session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except Timeout:
            self._logger.warning(f"{operation} timed out after {self.timeout_seconds:.1f}s")
            raise RemoteTimeoutError(operation=operation, timeout_seconds=self.timeout_seconds)
        except RequestsConnectionError as e:
            self._logger.warning(f"{operation} could not connect: {e}")
            raise NetworkError(f"Package API unreachable: {e}", operation=operation)
        except RequestException as e:
            self._logger.warning(f"{operation} failed: {e}")
            raise NetworkError(f"Package API request failed: {e}", operation=operation)

        status = response.status_code

        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            snippet = _error_body_snippet(response)
            self._logger.warning(f"{operation} got retryable status {status}: {snippet}")
            raise NetworkError(
                f"Package API unavailable (status={status})",
                operation=operation,
                status_code=status,
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if 400 <= status < 500:
            message, error_code = self._extract_error(body, response)
            self._logger.info(f"{operation} rejected ({status}, {error_code or 'no code'}): {message}")
            raise ApplicationError(
                message,
                error_code=error_code,
                status_code=status,
                operation=operation,
            )

        if not isinstance(body, dict):
            # 2xx with a non-JSON body: captive portal or broken proxy, not the API
            raise NetworkError(
                f"Unexpected non-JSON response (status={status})",
                operation=operation,
                status_code=status,
            )

        if body.get("success") is False:
            message, error_code = self._extract_error(body, response)
            self._logger.info(f"{operation} rejected by server: {message}")
            raise ApplicationError(
                message,
                error_code=error_code,
                status_code=status,
                operation=operation,
            )

        return body

    @staticmethod
    def _extract_error(body: Any, response: requests.Response) -> tuple:
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or ""
            error_code = body.get("error_code") or ""
            if message:
                return str(message), str(error_code)
        return (
            f"Request rejected (status={response.status_code}): {_error_body_snippet(response)}",
            "",
        )
