from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class StaffRole(str, Enum):
    REQUESTER = 'REQUESTER'
    FULFILLER = 'FULFILLER'
    SUPERVISOR = 'SUPERVISOR'
    ADMIN = 'ADMIN'


class SupplyRequestStatus(str, Enum):
    SUBMITTED = 'SUBMITTED'
    RECEIVED = 'RECEIVED'
    PICKING = 'PICKING'
    READY = 'READY'
    COMPLETED = 'COMPLETED'
    REJECTED = 'REJECTED'
    AWAITING_APPROVAL = 'AWAITING_APPROVAL'


TERMINAL_STATUSES = frozenset({SupplyRequestStatus.COMPLETED, SupplyRequestStatus.REJECTED})


class SupplyRequestPriority(str, Enum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'
    URGENT = 'URGENT'


class InventoryTransactionType(str, Enum):
    FULFILLED = 'FULFILLED'
    ADD = 'ADD'
    REMOVE = 'REMOVE'
    ADJUSTMENT = 'ADJUSTMENT'


class ReceiptType(str, Enum):
    PICKUP = 'PICKUP'
    FINAL = 'FINAL'


class StaffMember(Base):
    __tablename__ = 'staff_members'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[StaffRole] = mapped_column(
        SQLEnum(StaffRole, name='staff_role'), nullable=False, default=StaffRole.REQUESTER, server_default='REQUESTER'
    )
    email: Mapped[str | None] = mapped_column(Text)
    department: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryItem(Base):
    __tablename__ = 'inventory_items'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    minimum_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default='each', server_default='each')
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryTransaction(Base):
    __tablename__ = 'inventory_transactions'
    __table_args__ = (
        CheckConstraint('new_quantity - previous_quantity = quantity', name='inventory_transactions_delta_ck'),
        Index('inventory_transactions_item_idx', 'item_id', 'id'),
        Index('inventory_transactions_reference_idx', 'reference_id'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('inventory_items.id'), nullable=False)
    transaction_type: Mapped[InventoryTransactionType] = mapped_column(
        SQLEnum(InventoryTransactionType, name='inventory_transaction_type'), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    new_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('supply_requests.id'))
    notes: Mapped[str | None] = mapped_column(Text)
    created_by_staff_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_members.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SupplyRequest(Base):
    __tablename__ = 'supply_requests'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    requester_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('staff_members.id'), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[SupplyRequestPriority] = mapped_column(
        SQLEnum(SupplyRequestPriority, name='supply_request_priority'),
        nullable=False,
        default=SupplyRequestPriority.MEDIUM,
        server_default='MEDIUM',
    )
    status: Mapped[SupplyRequestStatus] = mapped_column(
        SQLEnum(SupplyRequestStatus, name='supply_request_status'),
        nullable=False,
        default=SupplyRequestStatus.SUBMITTED,
        server_default='SUBMITTED',
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    assigned_fulfiller_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_members.id'))
    work_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    picking_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    picking_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ready_for_delivery_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfilled_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_members.id'))
    fulfillment_notes: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    supervisor_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_members.id'))
    approval_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SupplyRequestItem(Base):
    __tablename__ = 'supply_request_items'
    __table_args__ = (
        UniqueConstraint('request_id', 'item_id', name='supply_request_items_request_item_key'),
        CheckConstraint('quantity_requested > 0', name='supply_request_items_requested_positive_ck'),
        CheckConstraint(
            'quantity_fulfilled >= 0 AND quantity_fulfilled <= quantity_requested',
            name='supply_request_items_fulfilled_range_ck',
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('supply_requests.id', ondelete='CASCADE'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('inventory_items.id'), nullable=False)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_fulfilled: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)


class SupplyRequestStatusHistory(Base):
    __tablename__ = 'supply_request_status_history'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('supply_requests.id', ondelete='CASCADE'), nullable=False)
    status: Mapped[SupplyRequestStatus] = mapped_column(
        SQLEnum(SupplyRequestStatus, name='supply_request_status'), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)
    changed_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_members.id'))
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SupplyReceipt(Base):
    __tablename__ = 'supply_request_receipts'
    __table_args__ = (
        UniqueConstraint('receipt_number', name='supply_request_receipts_number_key'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('supply_requests.id', ondelete='CASCADE'), nullable=False)
    receipt_type: Mapped[ReceiptType] = mapped_column(SQLEnum(ReceiptType, name='receipt_type'), nullable=False)
    receipt_number: Mapped[str] = mapped_column(String(64), nullable=False)
    receipt_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor_staff_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_members.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    request_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('supply_requests.id'))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
