from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from supply_desk.errors import ConflictError, NotFoundError, ValidationError
from supply_desk.models import (
    InventoryItem,
    StaffMember,
    SupplyReceipt,
    SupplyRequest,
    SupplyRequestItem,
    SupplyRequestPriority,
    SupplyRequestStatus,
    SupplyRequestStatusHistory,
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class RequestedItem:
    item_id: int
    quantity_requested: int
    notes: str | None = None


def _coerce_priority(priority: SupplyRequestPriority | str) -> SupplyRequestPriority:
    if isinstance(priority, SupplyRequestPriority):
        return priority
    try:
        return SupplyRequestPriority(str(priority).strip().upper())
    except ValueError as exc:
        raise ValidationError(f'Unknown priority: {priority}') from exc


def validate_pick(line: SupplyRequestItem, quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f'Picked quantity must be a whole number for item {line.item_id}')
    if quantity < 0:
        raise ValidationError(f'Picked quantity cannot be negative for item {line.item_id}')
    if quantity > line.quantity_requested:
        raise ValidationError(
            f'Picked quantity {quantity} exceeds requested {line.quantity_requested} for item {line.item_id}'
        )


def request_row(req: SupplyRequest) -> dict:
    return {
        'id': req.id,
        'requester_id': req.requester_id,
        'title': req.title,
        'description': req.description,
        'priority': req.priority.value,
        'status': req.status.value,
        'version': req.version,
        'assigned_fulfiller_id': req.assigned_fulfiller_id,
        'work_started_at': req.work_started_at,
        'picking_started_at': req.picking_started_at,
        'picking_completed_at': req.picking_completed_at,
        'ready_for_delivery_at': req.ready_for_delivery_at,
        'completed_at': req.completed_at,
        'fulfilled_by_id': req.fulfilled_by_id,
        'fulfillment_notes': req.fulfillment_notes,
        'rejection_reason': req.rejection_reason,
        'supervisor_id': req.supervisor_id,
        'approval_requested_at': req.approval_requested_at,
        'created_at': req.created_at,
        'updated_at': req.updated_at,
    }


class OrderStore:
    """Reads and writes supply requests, their item lines and status history.

    Status changes go through :meth:`transition`, a conditional update on the
    ``(status, version)`` pair the caller last read.
    """

    def create_request(
        self,
        db: Session,
        *,
        requester_id: int,
        title: str,
        items: list[RequestedItem],
        priority: SupplyRequestPriority | str = SupplyRequestPriority.MEDIUM,
        description: str | None = None,
    ) -> SupplyRequest:
        clean_title = (title or '').strip()
        if not clean_title:
            raise ValidationError('Title is required')
        if not items:
            raise ValidationError('Request at least one item')
        priority = _coerce_priority(priority)

        requester = db.execute(select(StaffMember.id).where(StaffMember.id == requester_id)).scalar_one_or_none()
        if requester is None:
            raise NotFoundError(f'Staff member {requester_id} not found')

        item_ids = [line.item_id for line in items]
        if len(set(item_ids)) != len(item_ids):
            raise ValidationError('Each item may only appear once per request')
        known = set(
            db.execute(
                select(InventoryItem.id).where(InventoryItem.id.in_(item_ids), InventoryItem.active.is_(True))
            ).scalars().all()
        )
        missing = [item_id for item_id in item_ids if item_id not in known]
        if missing:
            raise NotFoundError(f'Inventory items not found: {missing}')
        for line in items:
            if line.quantity_requested <= 0:
                raise ValidationError(f'Requested quantity must be positive for item {line.item_id}')

        now = _now()
        req = SupplyRequest(
            requester_id=requester_id,
            title=clean_title,
            description=description.strip() if description and description.strip() else None,
            priority=priority,
            status=SupplyRequestStatus.SUBMITTED,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(req)
        db.flush()

        db.add_all(
            [
                SupplyRequestItem(
                    request_id=req.id,
                    item_id=line.item_id,
                    quantity_requested=line.quantity_requested,
                    quantity_fulfilled=0,
                    notes=line.notes,
                )
                for line in items
            ]
        )
        self.record_history(db, request_id=req.id, status=SupplyRequestStatus.SUBMITTED, changed_by_id=requester_id)
        db.flush()
        return req

    def get_request(self, db: Session, request_id: int) -> SupplyRequest:
        req = db.execute(
            select(SupplyRequest)
            .where(SupplyRequest.id == request_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not req:
            raise NotFoundError(f'Supply request {request_id} not found')
        return req

    def get_lines(self, db: Session, request_id: int) -> list[SupplyRequestItem]:
        return db.execute(
            select(SupplyRequestItem)
            .where(SupplyRequestItem.request_id == request_id)
            .order_by(SupplyRequestItem.id.asc())
            .execution_options(populate_existing=True)
        ).scalars().all()

    def get_line(self, db: Session, *, request_id: int, item_id: int) -> SupplyRequestItem:
        line = db.execute(
            select(SupplyRequestItem)
            .where(SupplyRequestItem.request_id == request_id, SupplyRequestItem.item_id == item_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not line:
            raise NotFoundError(f'Item {item_id} is not part of supply request {request_id}')
        return line

    def ensure_staff(self, db: Session, staff_id: int) -> None:
        exists = db.execute(select(StaffMember.id).where(StaffMember.id == staff_id)).scalar_one_or_none()
        if exists is None:
            raise NotFoundError(f'Staff member {staff_id} not found')

    def set_fulfilled_quantity(self, db: Session, *, line: SupplyRequestItem, quantity: int) -> None:
        validate_pick(line, quantity)
        line.quantity_fulfilled = quantity
        db.flush()

    def transition(
        self,
        db: Session,
        *,
        req: SupplyRequest,
        to_status: SupplyRequestStatus,
        **values,
    ) -> SupplyRequest:
        """Move ``req`` to ``to_status`` only if nobody changed it since it was read."""
        result = db.execute(
            update(SupplyRequest)
            .where(
                SupplyRequest.id == req.id,
                SupplyRequest.status == req.status,
                SupplyRequest.version == req.version,
            )
            .values(status=to_status, version=req.version + 1, updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f'Supply request {req.id} changed while it was being updated')
        return self.get_request(db, req.id)

    def record_history(
        self,
        db: Session,
        *,
        request_id: int,
        status: SupplyRequestStatus,
        changed_by_id: int | None,
        notes: str | None = None,
    ) -> None:
        db.add(
            SupplyRequestStatusHistory(
                request_id=request_id,
                status=status,
                notes=notes,
                changed_by_id=changed_by_id,
                changed_at=_now(),
            )
        )

    def list_requests(
        self,
        db: Session,
        *,
        status: SupplyRequestStatus | None = None,
        fulfiller_id: int | None = None,
        limit: int = 100,
    ) -> list[dict]:
        query = select(SupplyRequest).order_by(SupplyRequest.created_at.desc(), SupplyRequest.id.desc()).limit(limit)
        if status is not None:
            query = query.where(SupplyRequest.status == status)
        if fulfiller_id is not None:
            query = query.where(SupplyRequest.assigned_fulfiller_id == fulfiller_id)
        return [request_row(req) for req in db.execute(query).scalars().all()]

    def line_rows(self, db: Session, request_id: int) -> list[dict]:
        rows = db.execute(
            select(SupplyRequestItem, InventoryItem.name, InventoryItem.unit)
            .join(InventoryItem, InventoryItem.id == SupplyRequestItem.item_id)
            .where(SupplyRequestItem.request_id == request_id)
            .order_by(SupplyRequestItem.id.asc())
            .execution_options(populate_existing=True)
        ).all()
        return [
            {
                'id': line.id,
                'item_id': line.item_id,
                'item_name': name,
                'unit': unit,
                'quantity_requested': line.quantity_requested,
                'quantity_fulfilled': line.quantity_fulfilled,
                'notes': line.notes,
            }
            for line, name, unit in rows
        ]

    def request_detail(self, db: Session, request_id: int) -> dict:
        req = self.get_request(db, request_id)
        history = db.execute(
            select(SupplyRequestStatusHistory)
            .where(SupplyRequestStatusHistory.request_id == request_id)
            .order_by(SupplyRequestStatusHistory.id.asc())
        ).scalars().all()
        receipts = db.execute(
            select(SupplyReceipt).where(SupplyReceipt.request_id == request_id).order_by(SupplyReceipt.id.asc())
        ).scalars().all()
        detail = request_row(req)
        detail['items'] = self.line_rows(db, request_id)
        detail['history'] = [
            {
                'status': row.status.value,
                'notes': row.notes,
                'changed_by_id': row.changed_by_id,
                'changed_at': row.changed_at,
            }
            for row in history
        ]
        detail['receipts'] = [
            {
                'id': receipt.id,
                'receipt_type': receipt.receipt_type.value,
                'receipt_number': receipt.receipt_number,
                'created_at': receipt.created_at,
            }
            for receipt in receipts
        ]
        return detail
