from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_desk.config import settings
from supply_desk.errors import NotFoundError, ValidationError
from supply_desk.models import InventoryItem, ReceiptType, StaffMember, SupplyReceipt, SupplyRequest, SupplyRequestItem

RECEIPT_TITLES = {
    ReceiptType.PICKUP: 'Pickup Receipt',
    ReceiptType.FINAL: 'Final Receipt',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _staff_identity(db: Session, staff_id: int | None) -> dict | None:
    if staff_id is None:
        return None
    staff = db.execute(select(StaffMember).where(StaffMember.id == staff_id)).scalar_one_or_none()
    if not staff:
        return {'id': staff_id, 'name': None, 'email': None, 'department': None}
    return {
        'id': staff.id,
        'name': staff.full_name,
        'email': staff.email,
        'department': staff.department,
    }


@dataclass(frozen=True)
class ReceiptRecord:
    request_id: int
    receipt_type: ReceiptType
    receipt_number: str
    data: dict
    generated_at: datetime


class ReceiptGenerator:
    """Turns a point-in-time request snapshot into an immutable receipt record."""

    def __init__(self, *, number_prefix: str | None = None) -> None:
        self.number_prefix = number_prefix or settings.receipt_number_prefix

    def build_snapshot(self, db: Session, request_id: int) -> dict:
        req = db.execute(
            select(SupplyRequest)
            .where(SupplyRequest.id == request_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not req:
            raise NotFoundError(f'Supply request {request_id} not found')

        lines = db.execute(
            select(SupplyRequestItem, InventoryItem.name, InventoryItem.unit)
            .join(InventoryItem, InventoryItem.id == SupplyRequestItem.item_id)
            .where(SupplyRequestItem.request_id == request_id)
            .order_by(SupplyRequestItem.id.asc())
            .execution_options(populate_existing=True)
        ).all()

        return {
            'request': {
                'id': req.id,
                'title': req.title,
                'description': req.description,
                'priority': req.priority.value,
                'status': req.status.value,
                'created_at': _iso(req.created_at),
                'work_started_at': _iso(req.work_started_at),
                'ready_for_delivery_at': _iso(req.ready_for_delivery_at),
                'completed_at': _iso(req.completed_at),
                'fulfillment_notes': req.fulfillment_notes,
            },
            'requester': _staff_identity(db, req.requester_id),
            'fulfiller': _staff_identity(db, req.assigned_fulfiller_id),
            'items': [
                {
                    'item_id': line.item_id,
                    'name': name,
                    'unit': unit,
                    'quantity_requested': line.quantity_requested,
                    'quantity_fulfilled': line.quantity_fulfilled,
                }
                for line, name, unit in lines
            ],
        }

    def receipt_number(self, request_id: int, kind: ReceiptType) -> str:
        return f'{self.number_prefix}-{kind.value[0]}-{request_id:08d}'

    def generate(self, snapshot: dict, kind: ReceiptType | str, *, generated_at: datetime | None = None) -> ReceiptRecord:
        if not isinstance(kind, ReceiptType):
            try:
                kind = ReceiptType(str(kind).strip().upper())
            except ValueError as exc:
                raise ValidationError(f'Unknown receipt type: {kind}') from exc

        request = snapshot.get('request') or {}
        request_id = request.get('id')
        if request_id is None:
            raise ValidationError('Receipt snapshot is missing the request id')

        generated_at = generated_at or _now()
        items = copy.deepcopy(snapshot.get('items') or [])
        data = {
            'title': RECEIPT_TITLES[kind],
            'receipt_type': kind.value,
            'receipt_number': self.receipt_number(request_id, kind),
            'generated_at': generated_at.isoformat(),
            'request': copy.deepcopy(request),
            'requester': copy.deepcopy(snapshot.get('requester')),
            'fulfiller': copy.deepcopy(snapshot.get('fulfiller')),
            'items': items,
            'totals': {
                'lines': len(items),
                'quantity_requested': sum(item['quantity_requested'] for item in items),
                'quantity_fulfilled': sum(item['quantity_fulfilled'] for item in items),
                'short_lines': sum(1 for item in items if item['quantity_fulfilled'] < item['quantity_requested']),
            },
        }
        return ReceiptRecord(
            request_id=request_id,
            receipt_type=kind,
            receipt_number=data['receipt_number'],
            data=data,
            generated_at=generated_at,
        )

    def store(self, db: Session, record: ReceiptRecord) -> SupplyReceipt:
        receipt = SupplyReceipt(
            request_id=record.request_id,
            receipt_type=record.receipt_type,
            receipt_number=record.receipt_number,
            receipt_data=copy.deepcopy(record.data),
            created_at=record.generated_at,
        )
        db.add(receipt)
        db.flush()
        return receipt

    def issue(self, db: Session, *, request_id: int, kind: ReceiptType) -> SupplyReceipt:
        return self.store(db, self.generate(self.build_snapshot(db, request_id), kind))


def get_receipt(db: Session, *, request_id: int, kind: ReceiptType) -> dict | None:
    receipt = db.execute(
        select(SupplyReceipt)
        .where(SupplyReceipt.request_id == request_id, SupplyReceipt.receipt_type == kind)
        .order_by(SupplyReceipt.id.desc())
    ).scalars().first()
    if not receipt:
        return None
    return {
        'id': receipt.id,
        'request_id': receipt.request_id,
        'receipt_type': receipt.receipt_type.value,
        'receipt_number': receipt.receipt_number,
        'receipt_data': receipt.receipt_data,
        'created_at': receipt.created_at,
    }
