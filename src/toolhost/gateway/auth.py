"""Auth-Gateway: Credential-Prüfung und Sessions für die Transport-Schicht.

Stellt bereit:
  - Session:       Server-seitiger Eintrag Token ↔ Identität ↔ Ablauf
  - SessionStore:  Sessions anlegen, validieren, erneuern, widerrufen
  - AuthContext:   Ergebnis einer erfolgreichen Authentifizierung
  - Authenticator: Prüft Request-Header (api-key, bearer, jwt, basic)

Token-Ausstellung (Login, OAuth) liegt außerhalb; hier wird nur validiert.
Der Store gehört genau einem Transport und ist kein globaler Zustand.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from jose import ExpiredSignatureError, JWTError, jwt

from toolhost.config import AuthConfig
from toolhost.core.errors import AuthenticationError, AuthorizationError
from toolhost.telemetry.types import now_ms
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

ANONYMOUS = "anonymous"


# ============================================================================
# Sessions
# ============================================================================


@dataclass
class Session:
    """Session mit Access-Token (kurz) und Refresh-Token (lang)."""

    session_id: str
    user_id: str
    token: str
    refresh_token: str
    expires_at: int           # ms
    refresh_expires_at: int   # ms
    created_at: int
    last_activity: int
    ip_address: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at

    def can_refresh(self, now: int) -> bool:
        return now <= self.refresh_expires_at

    def to_dict(self, now: int | None = None) -> dict[str, Any]:
        d: dict[str, Any] = {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "expiresAt": self.expires_at,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "ipAddress": self.ip_address,
        }
        if now is not None:
            d["isExpired"] = self.is_expired(now)
        return d


class SessionStore:
    """In-Memory Sessions, auffindbar über Session-ID oder Access-Token."""

    def __init__(
        self,
        *,
        access_token_ttl_s: int = 15 * 60,
        refresh_token_ttl_s: int = 7 * 24 * 3600,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._access_ttl_ms = access_token_ttl_s * 1000
        self._refresh_ttl_ms = refresh_token_ttl_s * 1000
        self._clock = clock or now_ms
        self._sessions: dict[str, Session] = {}   # session_id → Session
        self._tokens: dict[str, str] = {}         # token → session_id

    # ── Anlegen & Nachschlagen ───────────────────────────────────

    def create_session(
        self, user_id: str, ip_address: str | None = None, **metadata: Any,
    ) -> Session:
        now = self._clock()
        session = Session(
            session_id=f"sess_{secrets.token_hex(16)}",
            user_id=user_id,
            token=secrets.token_urlsafe(32),
            refresh_token=f"ref_{secrets.token_urlsafe(32)}",
            expires_at=now + self._access_ttl_ms,
            refresh_expires_at=now + self._refresh_ttl_ms,
            created_at=now,
            last_activity=now,
            ip_address=ip_address,
            metadata=metadata,
        )
        self._sessions[session.session_id] = session
        self._tokens[session.token] = session.session_id
        log.info("session_created", session_id=session.session_id, user_id=user_id)
        return session

    def get(self, session_id_or_token: str) -> Session | None:
        session = self._sessions.get(session_id_or_token)
        if session is not None:
            return session
        session_id = self._tokens.get(session_id_or_token)
        return self._sessions.get(session_id) if session_id else None

    # ── Validierung ──────────────────────────────────────────────

    def validate_token(self, token: str, *, refresh: bool = False) -> Session:
        """Prüft ein Access-Token.

        Abgelaufen + refresh=True: neues Token mit neuer Ablaufzeit für
        dieselbe Session; das alte Token ist danach ungültig.

        Raises:
            AuthenticationError: Token unbekannt oder abgelaufen.
        """
        session_id = self._tokens.get(token)
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            raise AuthenticationError("Invalid token", error_code="INVALID_TOKEN")

        now = self._clock()
        if session.is_expired(now):
            if not refresh:
                raise AuthenticationError("Token expired", error_code="TOKEN_EXPIRED")
            if not session.can_refresh(now):
                raise AuthenticationError(
                    "Session expired, please log in again", error_code="SESSION_EXPIRED",
                )
            self._rotate(session, now)

        session.last_activity = now
        return session

    def refresh(self, refresh_token: str) -> Session:
        """Erneuert das Access-Token über das Refresh-Token."""
        now = self._clock()
        for session in self._sessions.values():
            if hmac.compare_digest(session.refresh_token, refresh_token):
                if not session.can_refresh(now):
                    raise AuthenticationError(
                        "Refresh token expired", error_code="SESSION_EXPIRED",
                    )
                self._rotate(session, now)
                session.last_activity = now
                return session
        raise AuthenticationError("Invalid refresh token", error_code="INVALID_TOKEN")

    def _rotate(self, session: Session, now: int) -> None:
        self._tokens.pop(session.token, None)
        session.token = secrets.token_urlsafe(32)
        session.expires_at = now + self._access_ttl_ms
        self._tokens[session.token] = session.session_id
        log.info("session_token_refreshed", session_id=session.session_id)

    # ── Verwaltung ───────────────────────────────────────────────

    def revoke(self, session_id_or_token: str) -> bool:
        session = self.get(session_id_or_token)
        if session is None:
            return False
        self._remove(session)
        log.info("session_revoked", session_id=session.session_id, user_id=session.user_id)
        return True

    def revoke_user(self, user_id: str) -> int:
        sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        for session in sessions:
            self._remove(session)
        if sessions:
            log.info("sessions_revoked", user_id=user_id, count=len(sessions))
        return len(sessions)

    def list_sessions(self, user_id: str | None = None) -> list[Session]:
        sessions = list(self._sessions.values())
        if user_id is not None:
            sessions = [s for s in sessions if s.user_id == user_id]
        return sessions

    def active_sessions(self) -> list[Session]:
        now = self._clock()
        return [s for s in self._sessions.values() if not s.is_expired(now)]

    def cleanup_expired(self) -> int:
        """Entfernt Sessions, deren Refresh-Token abgelaufen ist."""
        now = self._clock()
        expired = [s for s in self._sessions.values() if not s.can_refresh(now)]
        for session in expired:
            self._remove(session)
        return len(expired)

    def _remove(self, session: Session) -> None:
        self._sessions.pop(session.session_id, None)
        self._tokens.pop(session.token, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        sessions = list(self._sessions.values())
        return {
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for s in sessions if not s.is_expired(now)),
            "unique_users": len({s.user_id for s in sessions}),
        }


# ============================================================================
# Authenticator
# ============================================================================


@dataclass(frozen=True)
class AuthContext:
    """Identität eines authentifizierten Requests."""

    client_id: str
    method: str
    session_id: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_anonymous(self) -> bool:
        return self.method == "none"


class Authenticator:
    """Prüft Credentials aus Request-Headern gemäß AuthConfig."""

    def __init__(self, config: AuthConfig, sessions: SessionStore | None = None) -> None:
        self._config = config
        self._sessions = sessions

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def header_name(self) -> str:
        return self._config.resolved_header_name

    def is_exempt(self, path: str, base_path: str = "") -> bool:
        """Nur exakte Routen unter base_path; /mcp/tools/health ist nicht ausgenommen."""
        return any(path == f"{base_path}{p}" for p in self._config.exempt_paths)

    def authenticate(self, headers: Mapping[str, str]) -> AuthContext:
        """Gibt den AuthContext zurück.

        Raises:
            AuthenticationError: Credentials fehlen oder sind ungültig (401).
            AuthorizationError: JWT gültig, aber ohne Pflicht-Scope (403).
        """
        if not self._config.enabled:
            return AuthContext(client_id=ANONYMOUS, method="none")

        raw = _header(headers, self.header_name)
        if not raw:
            raise AuthenticationError(
                f"Missing credentials in header '{self.header_name}'",
                error_code="MISSING_CREDENTIALS",
            )

        if self._config.type == "apikey":
            return self._check_api_key(raw)
        if self._config.type == "basic":
            return self._check_basic(raw)

        token = _strip_scheme(raw, "Bearer")
        if self._config.type == "jwt":
            return self._check_jwt(token)
        return self._check_bearer(token)

    def _check_api_key(self, key: str) -> AuthContext:
        if not _matches_any(key, self._config.api_keys):
            raise AuthenticationError("Invalid API key", error_code="INVALID_API_KEY")
        digest = hashlib.sha256(key.encode()).hexdigest()[:12]
        return AuthContext(client_id=f"key:{digest}", method="apikey")

    def _check_bearer(self, token: str) -> AuthContext:
        if _matches_any(token, self._config.bearer_tokens):
            digest = hashlib.sha256(token.encode()).hexdigest()[:12]
            return AuthContext(client_id=f"token:{digest}", method="bearer")
        if self._sessions is not None:
            session = self._sessions.validate_token(token)
            return AuthContext(
                client_id=session.user_id, method="bearer", session_id=session.session_id,
            )
        raise AuthenticationError("Invalid bearer token", error_code="INVALID_TOKEN")

    def _check_jwt(self, token: str) -> AuthContext:
        try:
            claims = jwt.decode(
                token, self._config.jwt_secret, algorithms=[self._config.jwt_algorithm],
            )
        except ExpiredSignatureError as exc:
            raise AuthenticationError("Token expired", error_code="TOKEN_EXPIRED") from exc
        except JWTError as exc:
            raise AuthenticationError(f"Invalid token: {exc}", error_code="INVALID_TOKEN") from exc
        scope = self._config.jwt_required_scope
        if scope and scope not in str(claims.get("scope", "")).split():
            raise AuthorizationError(
                f"Token lacks required scope '{scope}'", error_code="INSUFFICIENT_SCOPE",
            )
        return AuthContext(client_id=str(claims.get("sub", "jwt")), method="jwt", claims=claims)

    def _check_basic(self, raw: str) -> AuthContext:
        encoded = _strip_scheme(raw, "Basic")
        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise AuthenticationError(
                "Malformed basic credentials", error_code="INVALID_CREDENTIALS",
            ) from exc
        user, sep, password = decoded.partition(":")
        expected = self._config.basic_credentials.get(user)
        if not sep or expected is None or not hmac.compare_digest(
            password.encode(), expected.encode(),
        ):
            raise AuthenticationError("Invalid credentials", error_code="INVALID_CREDENTIALS")
        return AuthContext(client_id=user, method="basic")


# ============================================================================
# Helpers
# ============================================================================


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, val in headers.items():
            if key.lower() == lowered:
                return val.strip()
        return ""
    return value.strip()


def _strip_scheme(value: str, scheme: str) -> str:
    prefix, _, rest = value.partition(" ")
    if prefix.lower() == scheme.lower() and rest:
        return rest.strip()
    return value


def _matches_any(candidate: str, allowed: list[str]) -> bool:
    found = False
    for item in allowed:
        if hmac.compare_digest(candidate.encode(), item.encode()):
            found = True
    return found
