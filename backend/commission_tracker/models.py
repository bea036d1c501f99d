"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Primary keys are UUID strings so rows can be created client-side and
referenced before a commit.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every stored datetime."""
    return datetime.now(timezone.utc)


CHANNEL_TYPES = ("Online", "Phygital")


class Role(SQLModel, table=True):
    """A named role. `is_system` roles are seeded and read-only."""
    __tablename__ = "roles"
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, nullable=False, unique=True)
    description: Optional[str] = None
    is_system: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    """A dashboard user.

    Fields:
    - `email`: unique login identifier
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: legacy role name, kept in sync with `role_id`
    - `role_id`: optional reference to a `Role` row
    """
    __tablename__ = "users"
    id: str = Field(default_factory=new_id, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    full_name: Optional[str] = None
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = "viewer"
    role_id: Optional[str] = Field(default=None, foreign_key="roles.id")
    created_at: datetime = Field(default_factory=utcnow)
    last_login: Optional[datetime] = None


class UserSession(SQLModel, table=True):
    """A login session; `id` is the opaque token stored in the cookie."""
    __tablename__ = "sessions"
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)


class Module(SQLModel, table=True):
    """A functional area that permissions are attached to."""
    __tablename__ = "modules"
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(nullable=False, unique=True)
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Permission(SQLModel, table=True):
    """An action (`view`, `edit`, `delete`) on a `Module`."""
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("module_id", "name"),)
    id: str = Field(default_factory=new_id, primary_key=True)
    module_id: str = Field(foreign_key="modules.id", index=True)
    name: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class UserPermission(SQLModel, table=True):
    """An explicit grant of a `Permission` to a `User`."""
    __tablename__ = "user_permissions"
    __table_args__ = (UniqueConstraint("user_id", "permission_id"),)
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    permission_id: str = Field(foreign_key="permissions.id")
    granted_by: Optional[str] = Field(default=None, foreign_key="users.id")
    granted_at: datetime = Field(default_factory=utcnow)


class Client(SQLModel, table=True):
    __tablename__ = "clients"
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    industry: str
    region: str
    created_at: datetime = Field(default_factory=utcnow)


class Product(SQLModel, table=True):
    """An insurance product with its default commission and fee rates."""
    __tablename__ = "products"
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    category: str
    insurer_name: str
    base_commission_pct: float
    cdp_fee_pct: float


class Broker(SQLModel, table=True):
    __tablename__ = "brokers"
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    contact_email: str
    partner_type: str


class SalesLead(SQLModel, table=True):
    __tablename__ = "sales_leads"
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    email: str
    phone: str


class ClientProductMap(SQLModel, table=True):
    """Which broker and sales lead serve a client for a product."""
    __tablename__ = "client_product_map"
    id: str = Field(default_factory=new_id, primary_key=True)
    client_id: str = Field(foreign_key="clients.id", index=True)
    product_id: str = Field(foreign_key="products.id")
    broker_id: str = Field(foreign_key="brokers.id")
    sales_lead_id: str = Field(foreign_key="sales_leads.id")
    channel_type: str
    start_date: date


class SalesData(SQLModel, table=True):
    """A single sale with premium amounts and the derived commission/fee.

    INR amounts are authoritative; USD amounts are converted with the
    exchange rate in force when the record was written.
    """
    __tablename__ = "sales_data"
    id: str = Field(default_factory=new_id, primary_key=True)
    client_id: str = Field(foreign_key="clients.id", index=True)
    product_id: str = Field(foreign_key="products.id", index=True)
    broker_id: str = Field(foreign_key="brokers.id", index=True)
    channel_type: str
    nbp_inr: float = 0.0
    gwp_inr: float = 0.0
    nbp_usd: float = 0.0
    gwp_usd: float = 0.0
    broker_commission_pct: float = 0.0
    broker_commission_inr: float = 0.0
    cdp_fee_pct: float = 0.0
    cdp_fee_inr: float = 0.0
    sale_date: date = Field(index=True)


RateDate = date


class ExchangeRate(SQLModel, table=True):
    """INR per USD effective from `date`."""
    __tablename__ = "exchange_rates"
    id: str = Field(default_factory=new_id, primary_key=True)
    date: RateDate = Field(index=True)
    rate: float
