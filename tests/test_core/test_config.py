"""
Tests für toolhost.config – Konfigurationssystem.

Testet:
  - Defaults und verschachtelte Modelle
  - YAML-Laden und Fehlerfälle
  - TOOLHOST_* Umgebungsvariablen
  - Validatoren und Presets
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import yaml

from toolhost.config import (
    AuthConfig,
    HttpConfig,
    ServerConfig,
    create_dev_config,
    create_prod_config,
    create_test_config,
    export_config,
    load_config,
    validate_port,
    validate_server_config,
    validate_server_name,
    validate_version,
)
from toolhost.core.errors import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path


class TestDefaults:
    def test_server_defaults(self) -> None:
        config = ServerConfig()
        assert config.name == "toolhost-server"
        assert config.port == 8000
        assert config.http.base_path == "/mcp"
        assert config.enable_stdio is False
        assert config.primary_transport == "http"

    def test_security_defaults(self) -> None:
        config = ServerConfig()
        assert config.security.auth.enabled is False
        assert config.security.rate_limiting.enabled is False
        assert config.security.auth.exempt_paths == ["/health"]
        assert config.performance.timeout_ms == 30_000

    def test_session_defaults(self) -> None:
        config = ServerConfig()
        assert config.session.access_token_ttl_s == 900
        assert config.session.refresh_token_ttl_s == 7 * 24 * 3600

    def test_header_name_resolution(self) -> None:
        assert AuthConfig(type="apikey").resolved_header_name == "X-API-Key"
        assert AuthConfig(type="bearer").resolved_header_name == "Authorization"
        assert AuthConfig(type="basic", header_name="X-Auth").resolved_header_name == "X-Auth"

    def test_jwt_requires_secret(self) -> None:
        with pytest.raises(ValueError):
            AuthConfig(enabled=True, type="jwt")

    @pytest.mark.parametrize("raw,expected", [
        ("/mcp", "/mcp"),
        ("mcp/", "/mcp"),
        ("/api/v1/", "/api/v1"),
        ("/", ""),
    ])
    def test_base_path_normalized(self, raw: str, expected: str) -> None:
        assert HttpConfig(base_path=raw).base_path == expected


class TestLoadConfig:
    def test_no_file_gives_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TOOLHOST_PORT", raising=False)
        config = load_config(tmp_path / "missing.yaml")
        assert config.port == 8000

    def test_yaml_overrides_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "name": "from-yaml",
            "port": 9100,
            "security": {"rate_limiting": {"enabled": True, "max_requests": 5}},
        }))
        config = load_config(path)
        assert config.name == "from-yaml"
        assert config.port == 9100
        assert config.security.rate_limiting.enabled is True
        assert config.security.rate_limiting.max_requests == 5
        # Nicht gesetzte Nachbarn bleiben auf Default
        assert config.security.rate_limiting.window_ms == 60_000

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"port": 9100}))
        monkeypatch.setenv("TOOLHOST_PORT", "9200")
        monkeypatch.setenv("TOOLHOST_SECURITY_RATE_LIMITING_MAX_REQUESTS", "7")
        monkeypatch.setenv("TOOLHOST_SECURITY_AUTH_API_KEYS", "a, b")
        config = load_config(path)
        assert config.port == 9200
        assert config.security.rate_limiting.max_requests == 7
        assert config.security.auth.api_keys == ["a", "b"]

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("name: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(path)

    def test_non_mapping_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path)

    def test_invalid_value(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"performance": {"timeout_ms": 1}}))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_export_roundtrip_is_loadable(self, tmp_path: Path) -> None:
        path = tmp_path / "exported.yaml"
        path.write_text(export_config(create_dev_config("exported")))
        assert load_config(path).name == "exported"


class TestValidators:
    @pytest.mark.parametrize("port", [1024, 8000, 65535])
    def test_valid_ports(self, port: int) -> None:
        validate_port(port)

    @pytest.mark.parametrize("port", [0, 80, 1023, 65536])
    def test_invalid_ports(self, port: int) -> None:
        with pytest.raises(ConfigurationError):
            validate_port(port)

    @pytest.mark.parametrize("name", ["srv", "my-server_1.0", "A"])
    def test_valid_names(self, name: str) -> None:
        validate_server_name(name)

    @pytest.mark.parametrize("name", ["", "-leading", "has space", "x" * 101])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ConfigurationError):
            validate_server_name(name)

    def test_version_format(self) -> None:
        validate_version("1.2.3")
        with pytest.raises(ConfigurationError):
            validate_version("1.2")
        with pytest.raises(ConfigurationError):
            validate_version("v1.2.3")

    def test_validate_server_config(self) -> None:
        validate_server_config(create_test_config("ok"))
        with pytest.raises(ConfigurationError):
            validate_server_config(ServerConfig(port=80))
        with pytest.raises(ConfigurationError):
            validate_server_config(ServerConfig(description=""))


class TestPresets:
    def test_dev(self) -> None:
        config = create_dev_config("dev")
        assert config.is_development
        assert config.logging.level == "DEBUG"
        assert config.security.cors.enabled
        assert config.security.cors.origins == ["*"]

    def test_prod(self) -> None:
        config = create_prod_config("prod", ["key-1"])
        assert config.is_production
        assert config.host == "0.0.0.0"
        assert config.port == 8080
        assert config.security.auth.enabled
        assert config.security.auth.api_keys == ["key-1"]
        assert config.security.rate_limiting.max_requests == 100
        assert config.logging.json_logs

    def test_test(self) -> None:
        config = create_test_config("t")
        assert config.port == 8001
        assert config.logging.level == "WARNING"
        assert config.performance.timeout_ms == 5_000

    def test_overrides_merge_deeply(self) -> None:
        config = create_prod_config("prod", ["k"], security={"rate_limiting": {"max_requests": 3}})
        assert config.security.rate_limiting.max_requests == 3
        assert config.security.auth.api_keys == ["k"]
