# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Error Taxonomy — Typed failures with their HTTP mapping.

Authorization denials are normally returned as outcome values by
AccessResolver; they become these exceptions only at the HTTP boundary.
Infrastructure failures (StoreError, TenantConnectionError) are raised.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class KeeperError(Exception):
    """Base error with a stable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotAuthenticatedError(KeeperError):
    code = "NOT_AUTHENTICATED"
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ForbiddenError(KeeperError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class MisconfiguredTenantError(KeeperError):
    """Instance has incomplete database settings; nothing was dialed."""

    code = "TENANT_NOT_CONFIGURED"
    status_code = 428

    def __init__(self, tenant_id: str, missing: Iterable[str]):
        self.tenant_id = tenant_id
        self.missing = sorted(missing)
        super().__init__(
            f"Database for instance '{tenant_id}' is not configured. "
            f"Open Settings and fill: {', '.join(self.missing)}",
            details={"tenant_id": tenant_id, "missing": self.missing},
        )


class TenantConnectionError(KeeperError):
    code = "TENANT_CONNECTION_FAILED"
    status_code = 500

    def __init__(self, tenant_id: str, detail: str):
        self.tenant_id = tenant_id
        super().__init__(
            f"Could not connect to database for instance '{tenant_id}': {detail}",
            details={"tenant_id": tenant_id},
        )


class StoreError(KeeperError):
    """Control-plane store failure. Transient infrastructure, not a denial."""

    code = "STORE_UNAVAILABLE"
    status_code = 503


class AppDatabaseConfigError(KeeperError):
    code = "APP_DB_NOT_CONFIGURED"
    status_code = 500


class DefaultInstanceProtectedError(KeeperError):
    code = "DEFAULT_INSTANCE_PROTECTED"
    status_code = 409

    def __init__(self, instance_id: str):
        super().__init__(f"Instance '{instance_id}' is the default instance and cannot be deleted")


class NotFoundError(KeeperError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} '{ident}' not found", details={"kind": kind, "id": ident})


class ConflictError(KeeperError):
    code = "CONFLICT"
    status_code = 409


class InvalidSettingsError(KeeperError):
    code = "INVALID_SETTINGS"
    status_code = 422


class BootstrapClosedError(KeeperError):
    code = "BOOTSTRAP_CLOSED"
    status_code = 409

    def __init__(self):
        super().__init__("The first administrator has already been created")


_APP_DB_MESSAGES = {
    "28P01": "App DB authentication failed for user \"{user}\". Check DATABASE_URL credentials.",
    "3D000": "App DB does not exist. Check DATABASE_URL database name.",
    "28000": "App DB authorization failed for user \"{user}\". Check DATABASE_URL credentials.",
}


def sqlstate_of(exc: BaseException) -> Optional[str]:
    """Dig a Postgres SQLSTATE out of a driver or SQLAlchemy-wrapped error."""
    for candidate in (exc, getattr(exc, "orig", None), getattr(exc, "__cause__", None)):
        if candidate is None:
            continue
        for attr in ("sqlstate", "pgcode"):
            value = getattr(candidate, attr, None)
            if value:
                return str(value)
    return None


def format_app_db_error(exc: BaseException, db_user: str = "unknown") -> str:
    """Short, operator-facing message for a control-plane DB failure."""
    fallback = "App DB error. Check DATABASE_URL and database availability."
    template = _APP_DB_MESSAGES.get(sqlstate_of(exc) or "")
    if template:
        return template.format(user=db_user)
    return str(exc) or fallback
