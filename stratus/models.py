from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import field_validator
from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, JSON, String, Text
from sqlmodel import Field, SQLModel

from stratus.services.constants import INSTANCE_STATUS_DESTROYED, INSTANCE_STATUS_PROVISIONING
from stratus.services.naming import is_valid_dns_label

DatabaseTier = Literal["shared", "dedicated"]
ComputeTier = Literal["small", "medium", "large"]


class SharedPoolMemberBase(SQLModel):
    id: str
    endpoint: str
    max_count: int


class SharedPoolMemberORM(SharedPoolMemberBase, table=True):
    __tablename__ = "shared_pool_member"
    __table_args__ = (
        CheckConstraint(
            "current_count >= 0 AND current_count <= max_count",
            name="ck_shared_pool_member_capacity",
        ),
    )

    id: str = Field(sa_column=Column(String(64), primary_key=True))
    endpoint: str = Field(nullable=False)
    current_count: int = Field(default=0, nullable=False)
    max_count: int = Field(nullable=False)
    active: bool = Field(default=True, nullable=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class SharedPoolMemberCreate(SharedPoolMemberBase):
    max_count: int = Field(gt=0)

    @field_validator("id")
    @classmethod
    def _id_is_label(cls, value: str) -> str:
        if not is_valid_dns_label(value):
            raise ValueError("pool member id must be a DNS label")
        return value


class SharedPoolMemberUpdate(SQLModel):
    active: bool


class SharedPoolMemberRead(SharedPoolMemberBase):
    current_count: int
    active: bool
    created_at: datetime
    updated_at: datetime


class SharedPoolReservationORM(SQLModel, table=True):
    __tablename__ = "shared_pool_reservation"

    instance_id: str = Field(sa_column=Column(String(128), primary_key=True))
    member_id: str = Field(
        sa_column=Column(String(64), ForeignKey("shared_pool_member.id"), nullable=False, index=True)
    )
    database_name: str = Field(nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class ProvisionRequest(SQLModel):
    instance_id: str = Field(min_length=1, max_length=128)
    owner_id: str = Field(min_length=1, max_length=128)
    subdomain: str
    database_tier: DatabaseTier = "shared"
    compute_tier: ComputeTier = "small"
    database_quota_gb: int = Field(default=1, ge=1, le=16384)
    storage_quota_gb: int = Field(default=5, ge=1, le=65536)
    environment: dict[str, str] = Field(default_factory=dict)
    admin_email: str
    admin_password: str = Field(min_length=8)
    app_version: Optional[str] = None

    @field_validator("subdomain")
    @classmethod
    def _subdomain_is_label(cls, value: str) -> str:
        if not is_valid_dns_label(value):
            raise ValueError("subdomain must be a lowercase DNS label")
        return value

    @field_validator("admin_email")
    @classmethod
    def _admin_email_shape(cls, value: str) -> str:
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("admin_email must be an email address")
        return value


class InstanceORM(SQLModel, table=True):
    __tablename__ = "instance"
    __table_args__ = (
        Index(
            "uq_instance_subdomain_live",
            "subdomain",
            unique=True,
            sqlite_where=Column("status").is_not(INSTANCE_STATUS_DESTROYED),
            postgresql_where=Column("status").is_not(INSTANCE_STATUS_DESTROYED),
        ),
    )

    instance_id: str = Field(sa_column=Column(String(128), primary_key=True))
    owner_id: str = Field(index=True)
    subdomain: str = Field(index=True)
    database_tier: str = Field(nullable=False)
    compute_tier: str = Field(nullable=False)
    status: str = Field(default=INSTANCE_STATUS_PROVISIONING, nullable=False, index=True)
    generation: int = Field(default=1, nullable=False)
    url: Optional[str] = Field(default=None)
    resources_json: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    error_kind: Optional[str] = Field(default=None)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    unresolved_json: Optional[list[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    destroyed_at: Optional[datetime] = Field(default=None)


class InstanceRead(SQLModel):
    instance_id: str
    owner_id: str
    subdomain: str
    database_tier: str
    compute_tier: str
    status: str
    generation: int
    url: Optional[str] = None
    resources_json: Optional[dict[str, Any]] = None
    error_kind: Optional[str] = None
    last_error: Optional[str] = None
    unresolved_json: Optional[list[str]] = None
    created_at: datetime
    updated_at: datetime
    destroyed_at: Optional[datetime] = None


class StageResultRead(SQLModel):
    stage: str
    resource: Optional[str] = None
    outputs: dict[str, str] = Field(default_factory=dict)
    adopted: bool = False
    completed_at: datetime


class ErrorDetailRead(SQLModel):
    kind: str
    message: str
    stage: Optional[str] = None
    retry_safe: bool
    unresolved: list[str] = Field(default_factory=list)


class ProvisionResultRead(SQLModel):
    instance_id: str
    status: str
    url: Optional[str] = None
    stages: list[StageResultRead] = Field(default_factory=list)
    error: Optional[ErrorDetailRead] = None


class DestroyResultRead(SQLModel):
    instance_id: str
    deleted: list[str] = Field(default_factory=list)
    already_absent: list[str] = Field(default_factory=list)
    pool_slot_released: bool = False


class HealthRead(SQLModel):
    instance_id: str
    url: str
    healthy: bool
