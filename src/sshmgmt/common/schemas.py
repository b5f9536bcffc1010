"""Shared data models for the control plane and node agents."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Catalog records


class Node(BaseModel):
    """A fleet member running the node agent."""

    id: int
    address: str
    token: str
    status: int = 0


class Service(BaseModel):
    """Resellable tier; ``max_logins`` is its capacity class."""

    id: int
    max_logins: int
    max_traffic: Optional[int] = None
    price: int
    available: bool = True


class Customer(BaseModel):
    id: int
    ref_id: Optional[int] = None
    register_date: datetime


class SellStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class Sell(BaseModel):
    """A single purchase linking a customer, a service tier and a node."""

    id: int
    user_id: int
    ref_id: Optional[int] = None
    service_id: int
    node_id: int
    firstbuy_date: Optional[datetime] = None
    invoice_date: Optional[datetime] = None
    username: Optional[str] = None
    password: Optional[str] = None
    password_hash: Optional[str] = None
    status: SellStatus = SellStatus.UNVERIFIED


class Login(BaseModel):
    """Operator login; the hash never leaves the control plane."""

    id: int
    username: str
    admin: bool = False
    register_date: datetime


# Control plane request payloads


class NewNode(BaseModel):
    address: str
    token: str
    status: int = 0


class NewService(BaseModel):
    max_logins: int = Field(ge=1)
    max_traffic: Optional[int] = None
    price: int = Field(ge=0)
    available: bool = True


class NewCustomer(BaseModel):
    id: int
    ref_id: Optional[int] = None
    register_date: datetime = Field(default_factory=_utcnow)


class NewSell(BaseModel):
    user_id: int
    service_id: int
    node_id: int
    ref_id: Optional[int] = None


class AccountInfo(BaseModel):
    """Options for verifying a sell."""

    days: Optional[int] = Field(default=None, ge=1)


class LoginInfo(BaseModel):
    username: str
    password: str


class RegisterInfo(LoginInfo):
    admin_key: str
    admin: bool = False


class TokenResponse(BaseModel):
    token: str
    role: str


# Partial updates


class _Patch(BaseModel):
    """Base for all-optional update records merged onto a loaded entity."""

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)

    def merge_into(self, entity: BaseModel) -> BaseModel:
        return entity.model_copy(update=self.changes())


class NodePatch(_Patch):
    address: Optional[str] = None
    token: Optional[str] = None
    status: Optional[int] = None


class ServicePatch(_Patch):
    max_logins: Optional[int] = Field(default=None, ge=1)
    max_traffic: Optional[int] = None
    price: Optional[int] = Field(default=None, ge=0)
    available: Optional[bool] = None


class SellPatch(_Patch):
    ref_id: Optional[int] = None
    service_id: Optional[int] = None
    node_id: Optional[int] = None
    firstbuy_date: Optional[datetime] = None
    invoice_date: Optional[datetime] = None
    username: Optional[str] = None
    password: Optional[str] = None
    password_hash: Optional[str] = None


# Node agent models


class SSHUser(BaseModel):
    """An OS account as created by the node agent."""

    username: str
    password_hash: str
    shell: str
    usergroup: str
    exp_date: str


class SSHUserInfo(BaseModel):
    username: str
    userid: int
    usergroup: Optional[tuple[int, str]] = None
    exp_date: str


class UserRawCreds(BaseModel):
    username: str
    password: str
    password_hash: str


class UserStatus(BaseModel):
    username: str
    status: str


class UserExp(BaseModel):
    username: str
    exp_date: str


class ChExpMsg(BaseModel):
    username: str
    exp_date: str
    message: str


class ChGrpMsg(BaseModel):
    username: str
    group: str
    message: str


class ProvisionedAccount(BaseModel):
    """What the control plane keeps after a node created an account for a sell."""

    username: str
    password: str
    password_hash: str
    usergroup: str
    exp_date: str


class InputSSHUser(BaseModel):
    """Account creation request sent to ``/api/cmd/useradd``."""

    username: str
    password: str
    exp_date: str
    group: str
    shell: Optional[str] = None


class AutoSSHUser(BaseModel):
    prefix: str
    users_count: int = Field(ge=0)
    exp_date: str
    group: str


class OnlyUser(BaseModel):
    username: str


class UserPasswd(BaseModel):
    username: str
    password: str


class UserGrp(BaseModel):
    username: str
    group: str


class UserExpDate(BaseModel):
    username: str
    exp_date: str


class UserLookupParams(BaseModel):
    """Filter for ``list_users``; at least one of prefix or group is required."""

    username: Optional[str] = None
    prefix: Optional[str] = None
    group: Optional[str] = None

    @model_validator(mode="after")
    def _require_filter(self) -> "UserLookupParams":
        if self.prefix is None and self.group is None:
            raise ValueError("either prefix or group is required")
        return self


class UsageParams(BaseModel):
    username: Optional[str] = None
    prefix: Optional[str] = None
    group: Optional[str] = None

    @model_validator(mode="after")
    def _require_selector(self) -> "UsageParams":
        if self.prefix is None and self.group is None and self.username is None:
            raise ValueError("one of prefix, group or username is required")
        return self

