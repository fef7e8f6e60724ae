"""Toolhost gateway: Authentifizierung und Sessions."""

from toolhost.gateway.auth import (  # noqa: F401
    AuthContext,
    Authenticator,
    Session,
    SessionStore,
)
