"""Base service client for calls to the incident case service."""

import json
import logging
from typing import Any, Optional, Tuple
from uuid import uuid4

import httpx

from incident_core_lib.errors import (
    ClosureGateError,
    NotFoundError,
    ReadOnlyError,
    TransportError,
    ValidationRejectedError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

CODE_PREFIX = "incidents."
CLOSE_CODE_PREFIX = "incidents.close."
CONFLICT_VERSION_CODE = "incidents.conflictVersion"
CLOSED_READ_ONLY_CODE = "incidents.closedReadOnly"

# Server closure refusal codes (after "incidents.") -> closure blockers
CLOSURE_CODES = {
    "closed": "already_closed",
    "completionStageMissing": "missing_closure_stage",
    "completionStageNotDone": "closure_stage_open",
    "completionStageEmpty": "no_decisions",
}


class BaseServiceClient:
    """Base class for case service HTTP clients.

    User context is propagated via X-User-* headers and every request carries
    an X-Correlation-ID. Non-2xx responses are translated into the
    incident_core_lib error taxonomy so callers never see httpx exceptions.

    Usage:
        class CaseServiceClient(BaseServiceClient):
            async def get_case(self, case_id: str, user_id: str) -> CaseDetail:
                data = await self._request("GET", f"/api/incidents/{case_id}", user_id=user_id)
                return CaseDetail.model_validate(data)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize service client.

        Args:
            base_url: Service base URL (e.g., http://incident-service:8000)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (e.g. httpx.MockTransport in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

        logger.info(f"Initialized {self.__class__.__name__} with base_url={base_url}")

    def _headers(
        self,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        user_roles: Optional[list] = None,
        correlation_id: Optional[str] = None
    ) -> dict:
        """Generate request headers with user context.

        Args:
            user_id: User ID for X-User-ID header
            user_email: User email for X-User-Email header
            user_roles: User roles for X-User-Roles header
            correlation_id: Optional correlation ID for request tracing

        Returns:
            Headers dict with X-User-* headers and correlation ID
        """
        headers = {
            "Content-Type": "application/json",
        }

        if user_id:
            headers["X-User-ID"] = user_id

        if user_email:
            headers["X-User-Email"] = user_email

        if user_roles:
            headers["X-User-Roles"] = json.dumps(user_roles)

        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client instance with configured timeout.

        Returns:
            Configured AsyncClient ready for use with async context manager
        """
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        path: str,
        user_id: Optional[str] = None,
        json_body: Any = None,
        resource: str = "",
        resource_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        closing: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body (None when empty).

        Raises:
            TransportError: Network failure or 5xx response
            VersionConflictError: 409 with a version-conflict code
            ReadOnlyError: Any other 409
            ClosureGateError: Closure refusal codes (``closing`` marks the close action)
            ValidationRejectedError: 400/422 and other 4xx refusals
            NotFoundError: 404
        """
        correlation_id = uuid4().hex
        async with self._get_client() as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json_body,
                    headers=self._headers(user_id=user_id, correlation_id=correlation_id),
                )
            except httpx.HTTPError as e:
                logger.warning(f"{method} {path} failed before a response (correlation_id={correlation_id}): {e}")
                raise TransportError(f"{method} {path} failed: {e}") from e

        self._raise_for_status(response, resource, resource_id, expected_version, closing)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _error_details(response: httpx.Response) -> Tuple[str, str]:
        """Extract (code, message) from an error body.

        The case service answers with a bare code as plain text
        (``incidents.conflictVersion``); JSON error envelopes are accepted too.
        """
        try:
            body = response.json()
        except ValueError:
            text = response.text.strip()
            return text, text
        if not isinstance(body, dict):
            return "", str(body)
        error = body.get("error", body)
        if isinstance(error, str):
            return error, body.get("message", error)
        if not isinstance(error, dict):
            return "", str(error)
        code = error.get("code") or ""
        message = error.get("message") or error.get("detail") or code
        return str(code), str(message)

    @staticmethod
    def _closure_blocker(code: str) -> Optional[str]:
        """Closure blocker named by a refusal code, if it is one."""
        if code.startswith(CLOSE_CODE_PREFIX):
            reason = code[len(CLOSE_CODE_PREFIX):]
            return CLOSURE_CODES.get(reason, reason)
        if code.startswith(CODE_PREFIX):
            return CLOSURE_CODES.get(code[len(CODE_PREFIX):])
        return None

    def _raise_for_status(
        self,
        response: httpx.Response,
        resource: str = "",
        resource_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        closing: bool = False,
    ) -> None:
        if response.is_success:
            return

        status = response.status_code
        code, message = self._error_details(response)
        logger.debug(f"Case service answered {status} ({code or 'no code'}) for {resource or 'request'} {resource_id or ''}")

        if status == 409:
            if code == CONFLICT_VERSION_CODE:
                raise VersionConflictError(
                    message,
                    resource=resource,
                    resource_id=resource_id,
                    expected_version=expected_version,
                )
            if closing and code == CLOSED_READ_ONLY_CODE:
                raise ClosureGateError([CLOSURE_CODES["closed"]], message)
            raise ReadOnlyError(message, code=code or None)

        if status == 404:
            raise NotFoundError(message, code=code or None)

        if status >= 500:
            raise TransportError(f"Case service error {status}: {message}", code=code or None)

        blocker = self._closure_blocker(code)
        if blocker is not None:
            raise ClosureGateError([blocker], message)

        raise ValidationRejectedError(message, code=code or None)

    async def close(self):
        """Close any persistent connections.

        Override this if your client maintains a persistent httpx.AsyncClient.
        """
        pass
