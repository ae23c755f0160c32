# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Instance Settings — Per-instance database access and webhook configuration.

TenantConnectionSettings is what PoolCache consumes. Its fingerprint is the
cache identity of a pool: any change to it means the pool must be rebuilt.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.engine import URL

SslMode = Literal["disable", "require", "verify-full"]

REQUIRED_FIELDS = ("host", "database", "user")


class TenantConnectionSettings(BaseModel):
    """Connection settings for an instance's n8n database."""

    host: str = ""
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = ""
    user: str = ""
    password: str = ""
    ssl_mode: SslMode = "disable"

    @field_validator("port", mode="before")
    @classmethod
    def _blank_port_is_default(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 5432
        return value

    @field_validator("host", "database", "user", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def fingerprint(self) -> str:
        """Deterministic digest of everything a live pool depends on."""
        secret = hashlib.sha256(self.password.encode("utf-8")).hexdigest()
        raw = "|".join(
            [self.host, str(self.port), self.database, self.user, self.ssl_mode, secret]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def to_url(self) -> URL:
        return URL.create(
            "postgresql+asyncpg",
            username=self.user,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def connect_args(self, timeout: float) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "timeout": timeout,
            "server_settings": {"client_encoding": "UTF8"},
        }
        # asyncpg understands libpq-style sslmode strings
        args["ssl"] = False if self.ssl_mode == "disable" else self.ssl_mode
        return args

    def masked(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["password"] = "********" if self.password else ""
        return data


class WebhookSettings(BaseModel):
    """Restore webhook; stored as configuration, rendered elsewhere."""

    url: str = ""
    method: Literal["POST", "PUT"] = "POST"
    content_type: Literal["application/json", "application/x-www-form-urlencoded"] = (
        "application/json"
    )
    template: str = (
        '{"workflowId":"{w_id}","versionId":"{id}","versionUuid":"{w_version}",'
        '"name":"{w_name}","updatedAt":"{w_updatedAt}","json":{w_json}}'
    )


class InstanceSettings(BaseModel):
    db: TenantConnectionSettings = Field(default_factory=TenantConnectionSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    @classmethod
    def merged(cls, stored: Dict[str, Any]) -> "InstanceSettings":
        """Overlay a stored (possibly partial) document onto the defaults."""
        defaults = cls().model_dump()
        for section in ("db", "webhook"):
            value = stored.get(section)
            if isinstance(value, dict):
                defaults[section].update(_normalize_keys(value))
        return cls.model_validate(defaults)


_LEGACY_KEYS = {"sslMode": "ssl_mode", "contentType": "content_type"}


def _normalize_keys(section: Dict[str, Any]) -> Dict[str, Any]:
    return {_LEGACY_KEYS.get(k, k): v for k, v in section.items()}
