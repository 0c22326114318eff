from __future__ import annotations

import json
import os
import re
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from portier_broker.crypto import SigningAlgorithm
from portier_broker.service.discovery import GOOGLE_IDP_ORIGIN, Link, ParseLinkError, Relation


class ConfigError(ValueError):
    """Raised when the broker configuration is inconsistent or incomplete."""


_LIMIT_PATTERN = re.compile(r"^\s*(\d+)\s*/\s*min\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class LimitConfig:
    """An allowance of ``count`` requests per fixed ``window_seconds`` bucket."""

    count: int
    window_seconds: int = 60

    @classmethod
    def per_minute(cls, count: int) -> "LimitConfig":
        return cls(count=count, window_seconds=60)

    @classmethod
    def parse(cls, value: str) -> "LimitConfig":
        """Parse a ``"<count>/min"`` string such as ``"5/min"``."""
        if not isinstance(value, str):
            raise ConfigError(f"invalid rate limit: {value!r}")
        match = _LIMIT_PATTERN.match(value)
        if not match:
            raise ConfigError(f"invalid rate limit {value!r}; expected '<count>/min'")
        count = int(match.group(1))
        if count < 1:
            raise ConfigError("rate limit count must be at least 1")
        return cls.per_minute(count)

    def __str__(self) -> str:
        return f"{self.count}/min"


# Common PaaS variables consulted when the broker-specific one is unset
_FALLBACK_ENV = {
    "redis_url": ("REDIS_URL", "REDISTOGO_URL", "REDISCLOUD_URL"),
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    """Accept JSON lists or comma separated strings from the environment."""
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return json.loads(stripped)
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Broker configuration, read from the environment and an optional ``.env`` file."""

    public_url: str = env_field("http://localhost:3333", "BROKER_PUBLIC_URL")
    allowed_origins: Optional[List[str]] = env_field(
        None,
        "BROKER_ALLOWED_ORIGINS",
        description="Relying party origins allowed to use the broker; unset allows any",
    )

    static_ttl: int = env_field(604_800, "BROKER_STATIC_TTL")
    discovery_ttl: int = env_field(604_800, "BROKER_DISCOVERY_TTL")
    keys_ttl: int = env_field(86_400, "BROKER_KEYS_TTL")
    token_ttl: int = env_field(600, "BROKER_TOKEN_TTL")
    session_ttl: int = env_field(900, "BROKER_SESSION_TTL")
    cache_ttl: int = env_field(3600, "BROKER_CACHE_TTL")

    keyfiles: List[str] = env_field([], "BROKER_KEYFILES")
    keytext: Optional[str] = env_field(None, "BROKER_KEYTEXT")
    signing_algs: List[SigningAlgorithm] = env_field(
        [SigningAlgorithm.RS256], "BROKER_SIGNING_ALGS"
    )
    generate_rsa_command: List[str] = env_field(
        [],
        "BROKER_GENERATE_RSA_COMMAND",
        description="External command printing a PEM RSA key; empty generates in-process",
    )

    redis_url: Optional[str] = env_field(None, "BROKER_REDIS_URL")
    sqlite_db: Optional[str] = env_field(None, "BROKER_SQLITE_DB")
    memory_storage: bool = env_field(False, "BROKER_MEMORY_STORAGE")

    from_name: str = env_field("Portier", "BROKER_FROM_NAME")
    from_address: Optional[str] = env_field(None, "BROKER_FROM_ADDRESS")
    smtp_server: Optional[str] = env_field(None, "BROKER_SMTP_SERVER")
    smtp_username: Optional[str] = env_field(None, "BROKER_SMTP_USERNAME")
    smtp_password: Optional[str] = env_field(None, "BROKER_SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "BROKER_SMTP_USE_TLS")

    limit_per_email: str = env_field("5/min", "BROKER_LIMIT_PER_EMAIL")

    google_client_id: Optional[str] = env_field(None, "BROKER_GOOGLE_CLIENT_ID")
    domain_overrides: Dict[str, List[Dict[str, str]]] = env_field(
        {},
        "BROKER_DOMAIN_OVERRIDES",
        description='JSON object: {"example.com": [{"rel": "...", "href": "..."}]}',
    )

    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            candidates = [env_key or name.upper(), *_FALLBACK_ENV.get(name, ())]
            for env_name in candidates:
                if env_name in os.environ:
                    merged[name] = os.environ[env_name]
                    break
                if env_name in env_file_values:
                    merged[name] = env_file_values[env_name]
                    break
        try:
            return cls(**merged)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigError(problems) from exc

    @field_validator("public_url")
    @classmethod
    def _strip_public_url(cls, value: str) -> str:
        value = (value or "").strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("public_url must be an http(s) URL")
        return value

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> Any:
        if value is None:
            return None
        return [origin.rstrip("/") for origin in _split_list(value)]

    @field_validator("keyfiles", mode="before")
    @classmethod
    def _parse_keyfiles(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("signing_algs", mode="before")
    @classmethod
    def _parse_signing_algs(cls, value: Any) -> Any:
        algs = _split_list(value)
        if not algs:
            raise ValueError("at least one signing algorithm is required")
        return [SigningAlgorithm.parse(alg) for alg in algs]

    @field_validator("generate_rsa_command", mode="before")
    @classmethod
    def _parse_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("limit_per_email")
    @classmethod
    def _validate_limit(cls, value: str) -> str:
        LimitConfig.parse(value)
        return value

    @field_validator("domain_overrides", mode="before")
    @classmethod
    def _parse_overrides(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        if not isinstance(value, dict):
            raise ValueError("domain_overrides must be a mapping of domain to links")
        normalized: Dict[str, List[Dict[str, str]]] = {}
        for domain, links in value.items():
            if isinstance(links, dict):
                links = [links]
            entries = []
            for link in links:
                try:
                    parsed = Link.parse(link.get("rel", ""), link.get("href", ""))
                except (ParseLinkError, AttributeError) as exc:
                    raise ValueError(
                        f"domain override configuration error for {domain}: {exc}"
                    ) from exc
                entries.append({"rel": parsed.rel.value, "href": parsed.href})
            normalized[domain.strip().lower()] = entries
        return normalized

    @model_validator(mode="after")
    def _validate_combinations(self) -> "Settings":
        selected = [
            name
            for name, enabled in (
                ("redis_url", bool(self.redis_url)),
                ("sqlite_db", bool(self.sqlite_db)),
                ("memory_storage", self.memory_storage),
            )
            if enabled
        ]
        if not selected:
            raise ConfigError("Must specify one of redis_url, sqlite_db or memory_storage")
        if len(selected) > 1:
            raise ConfigError("Can only specify one of redis_url, sqlite_db or memory_storage")
        if (self.smtp_username is None) != (self.smtp_password is None):
            raise ConfigError(
                "only one of smtp username and password specified; provide both or neither"
            )
        # Outside test mode confirmation mail must actually leave the process
        if not self.test_mode:
            if not self.from_address:
                raise ConfigError("no smtp from address configured")
            if not self.smtp_server:
                raise ConfigError("no smtp outserver address configured")
        return self

    @property
    def store_kind(self) -> str:
        if self.redis_url:
            return "redis"
        if self.sqlite_db:
            return "sqlite"
        return "memory"

    @property
    def rate_limit(self) -> LimitConfig:
        return LimitConfig.parse(self.limit_per_email)

    @property
    def has_static_keys(self) -> bool:
        return bool(self.keyfiles) or bool(self.keytext)

    def build_domain_overrides(self) -> Dict[str, List[Link]]:
        """Resolve configured overrides, adding the hosted-Google defaults first."""
        overrides: Dict[str, List[Link]] = {}
        if self.google_client_id:
            google = [Link(rel=Relation.GOOGLE, href=GOOGLE_IDP_ORIGIN)]
            overrides["gmail.com"] = google
            overrides["googlemail.com"] = list(google)
        for domain, links in self.domain_overrides.items():
            overrides[domain] = [Link.parse(link["rel"], link["href"]) for link in links]
        return overrides


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
