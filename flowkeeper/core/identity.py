# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Identity Types — Users, instances, memberships and the role order.

These are plain value objects handed across the store boundary; the ORM
rows in flowkeeper.storage.models are mapped onto them by the repositories.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Optional


class Role(IntEnum):
    """Ordered role: SUPERADMIN > ADMIN > USER."""

    USER = 1
    ADMIN = 2
    SUPERADMIN = 3

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_label(cls, value: str) -> "Role":
        for role, label in _LABELS.items():
            if label.lower() == str(value).strip().lower():
                return role
        raise ValueError(f"Unknown role: {value!r}")

    @property
    def is_membership_role(self) -> bool:
        return self is not Role.SUPERADMIN


_LABELS = {
    Role.USER: "User",
    Role.ADMIN: "Admin",
    Role.SUPERADMIN: "SuperAdmin",
}

MEMBERSHIP_ROLES = ("Admin", "User")


@dataclass(frozen=True)
class User:
    id: str
    name: str
    email: str
    is_superadmin: bool = False
    status: str = "Active"
    has_password: bool = False
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Instance:
    id: str
    name: str
    slug: str
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class Membership:
    user_id: str
    instance_id: str
    role: Role
    created_at: Optional[datetime] = None
