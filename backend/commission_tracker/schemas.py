"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ChannelType = Literal["Online", "Phygital"]


class LoginIn(BaseModel):
    """Payload for the login endpoint; `username` is accepted as an alias for email."""
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class LoginOut(BaseModel):
    success: bool
    role: str
    token: str


class CurrentUserOut(BaseModel):
    id: str
    username: str
    full_name: str
    email: str
    role: str


class ClientIn(BaseModel):
    name: str = Field(min_length=1)
    industry: str
    region: str


class ProductIn(BaseModel):
    name: str = Field(min_length=1)
    category: str
    insurer_name: str
    base_commission_pct: float = Field(ge=0, le=100)
    cdp_fee_pct: float = Field(ge=0, le=100)


class BrokerIn(BaseModel):
    name: str = Field(min_length=1)
    contact_email: str
    partner_type: str


class SalesLeadIn(BaseModel):
    name: str = Field(min_length=1)
    email: str
    phone: str


class MappingIn(BaseModel):
    """Client-product mapping payload."""
    client_id: str
    product_id: str
    broker_id: str
    sales_lead_id: str
    channel_type: ChannelType = "Online"
    start_date: date


class SalesDataIn(BaseModel):
    """A sale as entered on the upload form.

    Percentages default to the product's rates and the INR/USD derived
    figures are computed when omitted.
    """
    client_id: str
    product_id: str
    broker_id: str
    channel_type: ChannelType = "Online"
    nbp_inr: float = Field(ge=0)
    gwp_inr: float = Field(ge=0)
    nbp_usd: Optional[float] = Field(default=None, ge=0)
    gwp_usd: Optional[float] = Field(default=None, ge=0)
    broker_commission_pct: Optional[float] = Field(default=None, ge=0, le=100)
    broker_commission_inr: Optional[float] = Field(default=None, ge=0)
    cdp_fee_pct: Optional[float] = Field(default=None, ge=0, le=100)
    cdp_fee_inr: Optional[float] = Field(default=None, ge=0)
    sale_date: date


RateDate = date


class ExchangeRateIn(BaseModel):
    date: RateDate
    rate: float = Field(gt=0)


class UserCreateIn(BaseModel):
    username: str = Field(min_length=1)
    full_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    role_id: Optional[str] = None
    role: Optional[str] = None


class UserUpdateIn(BaseModel):
    full_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: Optional[str] = None
    role_id: Optional[str] = None
    role: Optional[str] = None


class RoleIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class GrantIn(BaseModel):
    permission_id: str


class PermissionOut(BaseModel):
    module_name: str
    name: str


class ImportResultOut(BaseModel):
    created: int
    errors: List[dict]
