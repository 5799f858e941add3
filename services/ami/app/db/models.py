from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from packages.shared.schemas.command_v1 import (
    CommandTypeV1,
    ItemStateV1,
    LogStatusV1,
    MeterStatusV1,
    RequestStateV1,
)
from packages.shared.schemas.import_v1 import ImportStatusV1, ImportTypeV1, RowStatusV1
from packages.shared.schemas.prepaid_v1 import LedgerReasonV1, RechargeModeV1
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    JSON,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    # Persist the enum *values* ("PendingApproval"), guarded by a CHECK constraint.
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class Consumer(Base):
    __tablename__ = "consumers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Meter(Base):
    __tablename__ = "meters"

    meter_serial_no: Mapped[str] = mapped_column(String(50), primary_key=True)
    consumer_id: Mapped[int | None] = mapped_column(ForeignKey("consumers.id"), nullable=True)

    manufacturer: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    status: Mapped[MeterStatusV1] = mapped_column(
        _enum(MeterStatusV1, "meter_status"), nullable=False, default=MeterStatusV1.ACTIVE
    )
    install_ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ImportBatch(Base):
    __tablename__ = "import_batches"

    batch_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    type: Mapped[ImportTypeV1] = mapped_column(_enum(ImportTypeV1, "import_type"), nullable=False)
    file_name: Mapped[str] = mapped_column(String(260), nullable=False)

    row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    valid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invalid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    status: Mapped[ImportStatusV1] = mapped_column(
        _enum(ImportStatusV1, "import_status"), nullable=False, default=ImportStatusV1.NEW
    )

    decided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ImportStaging(Base):
    __tablename__ = "import_staging"

    staging_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("import_batches.batch_id", ondelete="CASCADE"), nullable=False, index=True
    )
    row_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    row_status: Mapped[RowStatusV1 | None] = mapped_column(
        _enum(RowStatusV1, "row_status"), nullable=True
    )
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)


class CommandRequest(Base):
    __tablename__ = "command_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[CommandTypeV1] = mapped_column(
        _enum(CommandTypeV1, "command_type"), nullable=False
    )
    requested_by: Mapped[str] = mapped_column(String(100), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    state: Mapped[RequestStateV1] = mapped_column(
        _enum(RequestStateV1, "request_state"), nullable=False, default=RequestStateV1.DRAFT
    )
    reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    source_batch_id: Mapped[str | None] = mapped_column(
        ForeignKey("import_batches.batch_id"), nullable=True, index=True
    )

    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CommandItem(Base):
    __tablename__ = "command_items"
    __table_args__ = (
        UniqueConstraint("request_id", "meter_serial_no", name="uq_command_item_request_meter"),
        Index("ix_command_item_state", "state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("command_requests.id"), nullable=False, index=True
    )
    meter_serial_no: Mapped[str] = mapped_column(
        ForeignKey("meters.meter_serial_no"), nullable=False
    )

    state: Mapped[ItemStateV1] = mapped_column(
        _enum(ItemStateV1, "item_state"), nullable=False, default=ItemStateV1.PENDING_APPROVAL
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CommandLog(Base):
    __tablename__ = "command_logs"
    __table_args__ = (Index("ix_command_log_item_at", "item_id", "at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("command_items.id"), nullable=False)

    status: Mapped[LogStatusV1] = mapped_column(_enum(LogStatusV1, "log_status"), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)


class PrepaidBalance(Base):
    __tablename__ = "prepaid_balances"
    __table_args__ = (
        UniqueConstraint("consumer_id", "meter_serial_no", name="uq_prepaid_balance_owner"),
        # NULLs are distinct in a UNIQUE constraint; the consumer-level account needs its own.
        Index(
            "uq_prepaid_balance_consumer_level",
            "consumer_id",
            unique=True,
            sqlite_where=text("meter_serial_no IS NULL"),
            postgresql_where=text("meter_serial_no IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consumer_id: Mapped[int] = mapped_column(ForeignKey("consumers.id"), nullable=False)
    meter_serial_no: Mapped[str | None] = mapped_column(
        ForeignKey("meters.meter_serial_no"), nullable=True
    )

    balance_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0.00")
    )
    threshold_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0.00")
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Optimistic lock: every flush issues UPDATE ... WHERE version = <loaded version>.
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PrepaidLedger(Base):
    __tablename__ = "prepaid_ledger"
    __table_args__ = (Index("ix_ledger_consumer_ts", "consumer_id", "ts"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consumer_id: Mapped[int] = mapped_column(ForeignKey("consumers.id"), nullable=False)
    meter_serial_no: Mapped[str | None] = mapped_column(
        ForeignKey("meters.meter_serial_no"), nullable=True
    )

    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    delta_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    reason: Mapped[LedgerReasonV1] = mapped_column(
        _enum(LedgerReasonV1, "ledger_reason"), nullable=False
    )
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)


class RechargeTransaction(Base):
    __tablename__ = "recharge_transactions"
    __table_args__ = (Index("ix_recharge_consumer_at", "consumer_id", "at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consumer_id: Mapped[int] = mapped_column(ForeignKey("consumers.id"), nullable=False)
    meter_serial_no: Mapped[str | None] = mapped_column(
        ForeignKey("meters.meter_serial_no"), nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    mode: Mapped[RechargeModeV1] = mapped_column(
        _enum(RechargeModeV1, "recharge_mode"), nullable=False
    )
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ledger_id: Mapped[int | None] = mapped_column(ForeignKey("prepaid_ledger.id"), nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(150), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class UserRole(Base):
    __tablename__ = "user_roles"

    user_id: Mapped[int] = mapped_column(ForeignKey("app_users.id"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), primary_key=True)


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(300), nullable=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"

    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id"), primary_key=True)
