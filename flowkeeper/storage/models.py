# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
ORM Models — Control-plane table definitions.

Tables:
  - app_users: identities with a global superadmin flag
  - instances: tenants (the reserved "default" id always exists)
  - user_instance_memberships: (user, instance) → Admin | User
  - app_settings: per-instance settings document keyed by instance id
  - system_bootstrap: singleton row written with the first user
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from flowkeeper.storage.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


def _genid():
    return str(uuid.uuid4())


# ── Users ───────────────────────────────────────────────────

class AppUser(Base):
    __tablename__ = "app_users"

    id = Column(String(64), primary_key=True, default=_genid)
    name = Column(Text, nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="Invited")  # Active / Invited
    password_hash = Column(Text, nullable=True)
    is_superadmin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<User {self.email} superadmin={self.is_superadmin}>"


# ── Instances ───────────────────────────────────────────────

class InstanceRow(Base):
    __tablename__ = "instances"

    id = Column(String(64), primary_key=True, default=_genid)
    name = Column(Text, nullable=False)
    slug = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(64), nullable=True)

    def __repr__(self):
        return f"<Instance {self.slug}>"


# ── Memberships ─────────────────────────────────────────────

class MembershipRow(Base):
    __tablename__ = "user_instance_memberships"

    user_id = Column(
        String(64),
        ForeignKey("app_users.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    instance_id = Column(
        String(64),
        ForeignKey("instances.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    role = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('Admin', 'User')", name="ck_membership_role"),
    )

    def __repr__(self):
        return f"<Membership {self.user_id}@{self.instance_id} {self.role}>"


# ── Settings ────────────────────────────────────────────────

class AppSetting(Base):
    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(128), nullable=False, unique=True, index=True)
    value = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Setting {self.key}>"


# ── Bootstrap marker ────────────────────────────────────────

class SystemBootstrap(Base):
    """At most one row (id=1); its primary key serializes first-user creation."""

    __tablename__ = "system_bootstrap"

    id = Column(Integer, primary_key=True, autoincrement=False)
    first_user_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
