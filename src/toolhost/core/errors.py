"""Toolhost · Unified Error Hierarchy.

All custom exceptions inherit from ToolhostError, which carries an error_code
and optional details dict for programmatic handling. Each class also knows
its HTTP status and JSON-RPC error code, so both transports render errors
the same way.

Usage::

    from toolhost.core.errors import ValidationError

    raise ValidationError("Handler name is required", details={"field": "name"})
"""

from __future__ import annotations

from typing import Any


class ToolhostError(Exception):
    """Base exception for all Toolhost errors."""

    http_status: int = 500
    rpc_code: int = -32603

    def __init__(
        self,
        message: str,
        error_code: str = "TOOLHOST_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            d["details"] = self.details
        return d


class ConfigurationError(ToolhostError):
    """Invalid server or metric configuration (fatal to startup)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIGURATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ServerStateError(ToolhostError):
    """Lifecycle method called in a state that does not allow it."""

    http_status = 409

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_STATE_TRANSITION",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ValidationError(ToolhostError):
    """Bad handler registration or malformed input, rejected before invocation."""

    http_status = 400
    rpc_code = -32602

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class NotFoundError(ToolhostError):
    """Unknown handler name, session or connection id."""

    http_status = 404
    rpc_code = -32004

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class AuthenticationError(ToolhostError):
    """Missing, invalid or expired credentials."""

    http_status = 401
    rpc_code = -32001

    def __init__(
        self,
        message: str,
        error_code: str = "AUTHENTICATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class AuthorizationError(ToolhostError):
    """Valid credentials without the required permission."""

    http_status = 403
    rpc_code = -32003

    def __init__(
        self,
        message: str,
        error_code: str = "AUTHORIZATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class RateLimitError(ToolhostError):
    """Too many requests for a client/route within the current window."""

    http_status = 429
    rpc_code = -32029

    def __init__(
        self,
        message: str,
        retry_after: int = 0,
        error_code: str = "RATE_LIMIT_EXCEEDED",
        details: dict | None = None,
    ) -> None:
        details = {**(details or {}), "retry_after": retry_after}
        super().__init__(message, error_code=error_code, details=details)
        self.retry_after = retry_after


class HandlerExecutionError(ToolhostError):
    """A registered handler raised during invocation."""

    def __init__(
        self,
        message: str,
        error_code: str = "HANDLER_EXECUTION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class CircuitOpenError(ToolhostError):
    """Circuit breaker rejected a call without attempting it."""

    http_status = 503

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        error_code: str = "CIRCUIT_OPEN",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
