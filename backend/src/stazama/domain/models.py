"""SQLAlchemy ORM models for Stazama.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from stazama.infra.database import Base


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Profile(Base):
    """One per authenticated user. Owned by the user; admins may write."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    last_login_at = Column(DateTime, nullable=True)

    role_ref = relationship(
        "UserRoleAssignment", back_populates="profile", uselist=False, lazy="selectin"
    )

    @property
    def role(self) -> str:
        return self.role_ref.role if self.role_ref else "user"


class UserRoleAssignment(Base):
    """The single role held by a user: user, agent or admin."""

    __tablename__ = "user_roles"

    user_id = Column(String(36), ForeignKey("profiles.id"), primary_key=True)
    role = Column(String(20), nullable=False, default="user")
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    profile = relationship("Profile", back_populates="role_ref")


# ---------------------------------------------------------------------------
# Inspection requests
# ---------------------------------------------------------------------------


class InspectionRequest(Base):
    """A customer's request for a product/property inspection."""

    __tablename__ = "inspection_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tracking_id = Column(String(40), unique=True, nullable=False, index=True)

    # Customer
    customer_name = Column(String(100), nullable=False)
    whatsapp = Column(String(20), nullable=False)
    customer_address = Column(Text, nullable=True)

    # Service
    store_name = Column(String(100), nullable=False)
    store_location = Column(String(200), nullable=False)
    product_details = Column(Text, nullable=False)
    service_tier = Column(String(30), nullable=False, default="inspection")
    service_fee = Column(Numeric(12, 2), nullable=True)
    delivery_notes = Column(Text, nullable=True)
    payment_method = Column(String(50), nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default="pending", index=True)
    assigned_agent_id = Column(String(36), ForeignKey("profiles.id"), nullable=True, index=True)
    payment_received = Column(Boolean, nullable=True)
    receipt_number = Column(String(40), nullable=True)
    receipt_verification_code = Column(String(20), nullable=True)
    receipt_issued_at = Column(DateTime, nullable=True)
    receipt_data = Column(JSON, nullable=True)
    fee_notes = Column(Text, nullable=True)

    # Ownership: null for guest submissions
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
