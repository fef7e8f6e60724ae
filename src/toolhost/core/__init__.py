"""Toolhost core module."""

from toolhost.core.errors import (  # noqa: F401
    AuthenticationError,
    AuthorizationError,
    CircuitOpenError,
    ConfigurationError,
    HandlerExecutionError,
    NotFoundError,
    RateLimitError,
    ServerStateError,
    ToolhostError,
    ValidationError,
)
