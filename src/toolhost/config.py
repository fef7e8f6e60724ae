"""
Toolhost · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. A YAML file (overrides defaults)
  3. Environment variables TOOLHOST_* (overrides everything)

Die Pydantic-Modelle prüfen nur Form und Wertebereiche der Unterbereiche.
Name, Port und Version des Servers werden bewusst erst beim Start über
validate_server_config() geprüft, damit ServerCore.start() einen
ConfigurationError werfen und in den Zustand "error" wechseln kann.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from toolhost.core.errors import ConfigurationError
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

ENV_PREFIX = "TOOLHOST_"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class LoggingConfig(BaseModel):
    """Logging-Einstellungen."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = False
    console: bool = True
    log_dir: Path | None = None


class AuthConfig(BaseModel):
    """Authentifizierung der Transport-Schicht.

    Modi:
      - apikey: Header (Default X-API-Key) gegen api_keys
      - bearer: Authorization: Bearer <token> gegen bearer_tokens oder Sessions
      - jwt:    Authorization: Bearer <jwt>, signiert mit jwt_secret
                jwt_required_scope: Pflicht-Scope im scope-Claim, sonst 403
      - basic:  Authorization: Basic <b64(user:pass)> gegen basic_credentials
    """

    enabled: bool = False
    type: Literal["apikey", "bearer", "jwt", "basic"] = "apikey"
    header_name: str = ""
    api_keys: list[str] = Field(default_factory=list)
    bearer_tokens: list[str] = Field(default_factory=list)
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_required_scope: str = ""
    basic_credentials: dict[str, str] = Field(default_factory=dict)
    exempt_paths: list[str] = Field(default_factory=lambda: ["/health"])

    @property
    def resolved_header_name(self) -> str:
        if self.header_name:
            return self.header_name
        return "X-API-Key" if self.type == "apikey" else "Authorization"

    @model_validator(mode="after")
    def _check_credentials(self) -> "AuthConfig":
        if self.enabled and self.type == "jwt" and not self.jwt_secret:
            raise ValueError("jwt auth requires jwt_secret")
        return self


class RateLimitConfig(BaseModel):
    """Fixed-Window Rate-Limiting pro Client und Route."""

    enabled: bool = False
    window_ms: int = Field(default=60_000, gt=0)
    max_requests: int = Field(default=1000, gt=0)
    message: str = "Too many requests, please try again later."


class CorsConfig(BaseModel):
    """CORS-Einstellungen für den HTTP-Transport."""

    enabled: bool = False
    origins: list[str] = Field(default_factory=list)
    methods: list[str] = Field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    allowed_headers: list[str] = Field(
        default_factory=lambda: ["Content-Type", "Authorization", "X-API-Key"],
    )


class SecurityConfig(BaseModel):
    """Sicherheits-Einstellungen der Transport-Schicht."""

    auth: AuthConfig = Field(default_factory=AuthConfig)
    rate_limiting: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)


class PerformanceConfig(BaseModel):
    """Zeitlimits und Nebenläufigkeit."""

    timeout_ms: int = Field(default=30_000, ge=100, le=600_000)
    tool_timeout_ms: int = Field(default=30_000, ge=100, le=600_000)
    max_concurrent_requests: int = Field(default=100, ge=1, le=10_000)
    max_batch_size: int = Field(default=50, ge=1, le=1000)
    max_message_bytes: int = Field(default=1024 * 1024, ge=1024, le=64 * 1024 * 1024)


class HttpConfig(BaseModel):
    """HTTP-Transport."""

    enabled: bool = True
    base_path: str = "/mcp"

    @model_validator(mode="after")
    def _normalize_base_path(self) -> "HttpConfig":
        path = "/" + self.base_path.strip("/") if self.base_path.strip("/") else ""
        object.__setattr__(self, "base_path", path)
        return self


class SessionConfig(BaseModel):
    """Token-Laufzeiten für Sessions."""

    access_token_ttl_s: int = Field(default=15 * 60, ge=1)
    refresh_token_ttl_s: int = Field(default=7 * 24 * 3600, ge=1)


class MetricsConfig(BaseModel):
    """Speichergrenzen und Intervalle des MetricsCollector."""

    max_data_points: int = Field(default=10_000, ge=1)
    retention_ms: int = Field(default=3_600_000, ge=1)
    cleanup_interval_s: float = Field(default=300.0, gt=0)
    snapshot_interval_s: float = Field(default=30.0, gt=0)


# ============================================================================
# Haupt-Konfiguration
# ============================================================================


class ServerConfig(BaseModel):
    """Complete server configuration.

    Loaded once at startup and then used by ServerCore and all transports.
    """

    name: str = "toolhost-server"
    version: str = "1.0.0"
    description: str = "Toolhost MCP server"
    host: str = "localhost"
    port: int = 8000
    environment: Literal["development", "production", "test"] = "development"

    enable_stdio: bool = False
    primary_transport: Literal["stdio", "http"] = "http"

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# ============================================================================
# Validierung
# ============================================================================


def validate_port(port: int) -> None:
    """Port muss im Bereich 1024-65535 liegen."""
    if not isinstance(port, int) or isinstance(port, bool) or not 1024 <= port <= 65535:
        raise ConfigurationError(
            f"Invalid port {port!r}: must be an integer between 1024 and 65535",
            details={"field": "port", "value": port},
        )


def validate_server_name(name: str) -> None:
    """Name: 1-100 Zeichen, Buchstaben/Ziffern/._- und kein Sonderzeichen am Anfang."""
    if not isinstance(name, str) or not 1 <= len(name) <= 100 or not _NAME_PATTERN.match(name):
        raise ConfigurationError(
            f"Invalid server name {name!r}",
            details={"field": "name", "value": name},
        )


def validate_version(version: str) -> None:
    """Version muss dem Muster MAJOR.MINOR.PATCH folgen."""
    if not isinstance(version, str) or not _VERSION_PATTERN.match(version):
        raise ConfigurationError(
            f"Invalid version {version!r}: expected MAJOR.MINOR.PATCH",
            details={"field": "version", "value": version},
        )


def validate_server_config(config: ServerConfig) -> None:
    """Prüft die semantischen Regeln, die beim Start erzwungen werden."""
    validate_server_name(config.name)
    validate_version(config.version)
    validate_port(config.port)
    if not 1 <= len(config.description) <= 500:
        raise ConfigurationError(
            "Description must be between 1 and 500 characters",
            details={"field": "description"},
        )


# ============================================================================
# Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(data: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Wendet TOOLHOST_* Umgebungsvariablen an.

    Konvention: TOOLHOST_SECTION_KEY → data["section"]["key"]
    Beispiel: TOOLHOST_SECURITY_RATE_LIMITING_MAX_REQUESTS
              → data["security"]["rate_limiting"]["max_requests"]

    Sektionen werden gegen die vorhandenen Dicts aufgelöst, deshalb muss
    data bereits die Defaults enthalten.
    """
    environ = os.environ if environ is None else environ
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX):].lower().split("_")
        node = data
        consumed = 0
        while consumed < len(parts) - 1:
            # Längsten passenden Sektionsnamen suchen (rate_limiting etc.)
            for end in range(len(parts) - 1, consumed, -1):
                candidate = "_".join(parts[consumed:end])
                if isinstance(node.get(candidate), dict):
                    node = node[candidate]
                    consumed = end
                    break
            else:
                break
        leaf_key = "_".join(parts[consumed:])
        if leaf_key:
            node[leaf_key] = _coerce_env_value(value, node.get(leaf_key))
    return data


def _coerce_env_value(value: str, current: Any) -> Any:
    """Listen als Komma-getrennte Strings, Rest übernimmt Pydantic."""
    if isinstance(current, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def load_config(config_path: Path | None = None) -> ServerConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. YAML-Datei (wenn vorhanden)
      3. TOOLHOST_* Umgebungsvariablen

    Args:
        config_path: Pfad zur YAML-Datei. None = nur Defaults + Umgebung.

    Returns:
        Vollständig validierte ServerConfig.

    Raises:
        ConfigurationError: Datei ist kein gültiges YAML oder Werte sind ungültig.
    """
    data: dict[str, Any] = ServerConfig().model_dump()

    if config_path is not None and config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"Invalid YAML in {config_path}: {exc}",
                details={"path": str(config_path)},
            ) from exc
        if not isinstance(file_data, dict):
            raise ConfigurationError(
                f"Config file {config_path} must contain a mapping",
                details={"path": str(config_path)},
            )
        data = _deep_merge(data, file_data)

    data = _apply_env_overrides(data)

    try:
        return ServerConfig(**data)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def export_config(config: ServerConfig) -> str:
    """Serialisiert eine Konfiguration als YAML."""
    return yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False)


# ============================================================================
# Presets
# ============================================================================


def create_dev_config(server_name: str, **overrides: Any) -> ServerConfig:
    """Entwicklung: offene CORS, kein Auth, Debug-Logs."""
    base: dict[str, Any] = {
        "name": server_name,
        "environment": "development",
        "logging": {"level": "DEBUG"},
        "security": {"cors": {"enabled": True, "origins": ["*"]}},
    }
    return ServerConfig(**_deep_merge(base, overrides))


def create_prod_config(server_name: str, api_keys: list[str], **overrides: Any) -> ServerConfig:
    """Produktion: API-Key-Auth, Rate-Limiting, JSON-Logs, Bind auf 0.0.0.0."""
    base: dict[str, Any] = {
        "name": server_name,
        "environment": "production",
        "host": "0.0.0.0",
        "port": 8080,
        "logging": {"level": "INFO", "json_logs": True},
        "security": {
            "auth": {"enabled": True, "type": "apikey", "api_keys": api_keys},
            "rate_limiting": {"enabled": True, "window_ms": 15 * 60_000, "max_requests": 100},
        },
        "performance": {"timeout_ms": 10_000},
    }
    return ServerConfig(**_deep_merge(base, overrides))


def create_test_config(server_name: str, **overrides: Any) -> ServerConfig:
    """Tests: leise Logs, kurze Timeouts."""
    base: dict[str, Any] = {
        "name": server_name,
        "environment": "test",
        "port": 8001,
        "logging": {"level": "WARNING", "console": False},
        "performance": {"timeout_ms": 5_000, "tool_timeout_ms": 5_000},
    }
    return ServerConfig(**_deep_merge(base, overrides))
