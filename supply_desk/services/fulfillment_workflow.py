from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from supply_desk.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from supply_desk.models import (
    TERMINAL_STATUSES,
    InventoryTransactionType,
    ReceiptType,
    SupplyRequest,
    SupplyRequestPriority,
    SupplyRequestStatus,
)
from supply_desk.services.assignment_service import AssignmentCoordinator
from supply_desk.services.audit_service import log_audit
from supply_desk.services.inventory_ledger_service import InventoryLedger, transaction_row
from supply_desk.services.notification_service import ChangeSink, NullChangeSink, RequestChanged, publish_safely
from supply_desk.services.order_store_service import OrderStore, RequestedItem, validate_pick
from supply_desk.services.receipt_service import ReceiptGenerator

logger = logging.getLogger(__name__)

PICKABLE_STATUSES = frozenset({SupplyRequestStatus.RECEIVED, SupplyRequestStatus.PICKING})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    return value.strip() if value and value.strip() else None


class FulfillmentWorkflow:
    """State machine for a supply request from acceptance to completion.

    Each public operation is one database transaction: the request is re-read,
    its status checked, and the status change, item lines, ledger entries,
    history and audit rows commit together or not at all. Receipts are issued
    inside a savepoint so a receipt failure never undoes the transition.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        ledger: InventoryLedger | None = None,
        assignments: AssignmentCoordinator | None = None,
        orders: OrderStore | None = None,
        receipts: ReceiptGenerator | None = None,
        change_sink: ChangeSink | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger or InventoryLedger()
        self.assignments = assignments or AssignmentCoordinator()
        self.orders = orders or OrderStore()
        self.receipts = receipts or ReceiptGenerator()
        self.change_sink = change_sink or NullChangeSink()

    @contextmanager
    def _transaction(self, action: str, request_id: int | None) -> Iterator[Session]:
        try:
            with self.session_factory.begin() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error('Persistence failure during %s of supply request %s: %s', action, request_id, exc)
            raise PersistenceError(f'Could not {action} supply request {request_id}') from exc

    @contextmanager
    def _read(self, what: str) -> Iterator[Session]:
        try:
            with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error('Persistence failure while reading %s: %s', what, exc)
            raise PersistenceError(f'Could not read {what}') from exc

    def _require(self, req: SupplyRequest, allowed: frozenset[SupplyRequestStatus] | set, verb: str) -> None:
        if req.status not in allowed:
            raise ConflictError(f'Cannot {verb} supply request {req.id} while it is {req.status.value}')

    def _require_open(self, req: SupplyRequest, verb: str) -> None:
        if req.status in TERMINAL_STATUSES:
            raise ConflictError(f'Cannot {verb} supply request {req.id}; it is already {req.status.value}')

    def _issue_receipt(self, db: Session, request_id: int, kind: ReceiptType) -> None:
        try:
            with db.begin_nested():
                receipt = self.receipts.issue(db, request_id=request_id, kind=kind)
            logger.info('Issued %s receipt %s for supply request %s', kind.value, receipt.receipt_number, request_id)
        except Exception:
            logger.exception('Failed to generate %s receipt for supply request %s', kind.value, request_id)

    def _record(
        self,
        db: Session,
        *,
        req: SupplyRequest,
        action: str,
        actor_staff_id: int | None,
        status_changed: bool = True,
        notes: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        if status_changed:
            self.orders.record_history(db, request_id=req.id, status=req.status, changed_by_id=actor_staff_id, notes=notes)
        log_audit(
            db,
            actor_staff_id=actor_staff_id,
            action=action,
            request_id=req.id,
            metadata={'status': req.status.value, **(metadata or {})},
        )
        db.flush()
        return self.orders.request_detail(db, req.id)

    def _publish(self, detail: dict, action: str, actor_staff_id: int | None) -> dict:
        publish_safely(
            self.change_sink,
            RequestChanged(
                request_id=detail['id'],
                action=action,
                status=detail['status'],
                actor_staff_id=actor_staff_id,
            ),
        )
        return detail

    def _check_quantities(self, lines, quantities: dict[int, int] | None) -> None:
        if not quantities:
            return
        by_item = {line.item_id: line for line in lines}
        unknown = sorted(item_id for item_id in quantities if item_id not in by_item)
        if unknown:
            raise NotFoundError(f'Items {unknown} are not part of this supply request')
        for item_id, qty in quantities.items():
            validate_pick(by_item[item_id], qty)

    def _settle(
        self,
        db: Session,
        *,
        req: SupplyRequest,
        dispensed_quantities: dict[int, int] | None,
        staff_id: int | None,
    ) -> dict[int, int]:
        """Bring the ledger in line with what was actually handed over.

        Compares each line's recorded quantity with the stock already taken
        for this request and books only the difference.
        """
        lines = sorted(self.orders.get_lines(db, req.id), key=lambda line: line.item_id)
        self._check_quantities(lines, dispensed_quantities)

        residuals: dict[int, int] = {}
        for line in lines:
            if dispensed_quantities and line.item_id in dispensed_quantities:
                self.orders.set_fulfilled_quantity(db, line=line, quantity=dispensed_quantities[line.item_id])
            already = self.ledger.net_dispensed(db, item_id=line.item_id, reference_id=req.id)
            residual = line.quantity_fulfilled - already
            if residual > 0:
                self.ledger.deduct(
                    db,
                    item_id=line.item_id,
                    quantity=residual,
                    reference_id=req.id,
                    notes=f'Supply request #{req.id} completed: {req.title}',
                    staff_id=staff_id,
                )
            elif residual < 0:
                self.ledger.adjust(
                    db,
                    item_id=line.item_id,
                    delta=-residual,
                    kind=InventoryTransactionType.ADD,
                    reason=f'Supply request #{req.id} completed: returned to stock',
                    reference_id=req.id,
                    staff_id=staff_id,
                )
            if residual:
                residuals[line.item_id] = residual
        return residuals

    def accept(self, request_id: int, staff_id: int) -> dict:
        with self._transaction('accept', request_id) as db:
            self.orders.ensure_staff(db, staff_id)
            self.assignments.try_assign(db, request_id=request_id, staff_id=staff_id)
            req = self.orders.get_request(db, request_id)
            detail = self._record(db, req=req, action='SUPPLY_REQUEST_ACCEPTED', actor_staff_id=staff_id)
        logger.info('Supply request %s accepted by staff %s', request_id, staff_id)
        return self._publish(detail, 'accepted', staff_id)

    def record_pick(self, request_id: int, item_id: int, quantity_picked: int, *, staff_id: int | None = None) -> dict:
        with self._transaction('record a pick for', request_id) as db:
            req = self.orders.get_request(db, request_id)
            self._require(req, PICKABLE_STATUSES, 'record a pick for')
            line = self.orders.get_line(db, request_id=request_id, item_id=item_id)
            validate_pick(line, quantity_picked)

            first_pick = req.status == SupplyRequestStatus.RECEIVED
            values = {'picking_started_at': _now()} if first_pick else {}
            req = self.orders.transition(db, req=req, to_status=SupplyRequestStatus.PICKING, **values)
            self.orders.set_fulfilled_quantity(db, line=line, quantity=quantity_picked)
            detail = self._record(
                db,
                req=req,
                action='SUPPLY_REQUEST_ITEM_PICKED',
                actor_staff_id=staff_id,
                status_changed=first_pick,
                metadata={'item_id': item_id, 'quantity_picked': quantity_picked},
            )
        return self._publish(detail, 'picked', staff_id)

    def mark_ready(
        self,
        request_id: int,
        final_picked_quantities: dict[int, int] | None = None,
        *,
        staff_id: int | None = None,
    ) -> dict:
        with self._transaction('mark ready', request_id) as db:
            req = self.orders.get_request(db, request_id)
            self._require(req, PICKABLE_STATUSES, 'mark ready')
            # Item order keeps row locks consistent across concurrent requests.
            lines = sorted(self.orders.get_lines(db, request_id), key=lambda line: line.item_id)
            self._check_quantities(lines, final_picked_quantities)
            final = {
                line.item_id: (final_picked_quantities or {}).get(line.item_id, line.quantity_fulfilled)
                for line in lines
            }

            now = _now()
            req = self.orders.transition(
                db,
                req=req,
                to_status=SupplyRequestStatus.READY,
                picking_started_at=req.picking_started_at or now,
                picking_completed_at=now,
                ready_for_delivery_at=now,
            )
            for line in lines:
                qty = final[line.item_id]
                self.orders.set_fulfilled_quantity(db, line=line, quantity=qty)
                if qty > 0:
                    self.ledger.deduct(
                        db,
                        item_id=line.item_id,
                        quantity=qty,
                        reference_id=req.id,
                        notes=f'Supply request #{req.id} ready for pickup: {req.title}',
                        staff_id=staff_id,
                    )

            self._issue_receipt(db, req.id, ReceiptType.PICKUP)
            detail = self._record(
                db,
                req=req,
                action='SUPPLY_REQUEST_READY',
                actor_staff_id=staff_id,
                metadata={'deducted': {str(item_id): qty for item_id, qty in final.items() if qty > 0}},
            )
        logger.info('Supply request %s ready for pickup', request_id)
        return self._publish(detail, 'ready', staff_id)

    def complete(
        self,
        request_id: int,
        notes: str | None = None,
        *,
        staff_id: int | None = None,
        dispensed_quantities: dict[int, int] | None = None,
    ) -> dict:
        with self._transaction('complete', request_id) as db:
            req = self.orders.get_request(db, request_id)
            detail = self._close_out(
                db,
                req=req,
                notes=notes,
                fulfilled_by_id=staff_id or req.assigned_fulfiller_id,
                actor_staff_id=staff_id,
                dispensed_quantities=dispensed_quantities,
                action='SUPPLY_REQUEST_COMPLETED',
            )
        logger.info('Supply request %s completed', request_id)
        return self._publish(detail, 'completed', staff_id)

    def confirm_pickup(self, request_id: int, requester_id: int, notes: str | None = None) -> dict:
        """Requester confirms they collected their own Ready request."""
        with self._transaction('confirm pickup of', request_id) as db:
            req = self.orders.get_request(db, request_id)
            if req.requester_id != requester_id:
                raise NotFoundError(f'Supply request {request_id} not found')
            detail = self._close_out(
                db,
                req=req,
                notes=notes,
                fulfilled_by_id=req.assigned_fulfiller_id,
                actor_staff_id=requester_id,
                dispensed_quantities=None,
                action='SUPPLY_REQUEST_PICKUP_CONFIRMED',
            )
        logger.info('Supply request %s pickup confirmed by requester %s', request_id, requester_id)
        return self._publish(detail, 'pickup_confirmed', requester_id)

    def _close_out(
        self,
        db: Session,
        *,
        req: SupplyRequest,
        notes: str | None,
        fulfilled_by_id: int | None,
        actor_staff_id: int | None,
        dispensed_quantities: dict[int, int] | None,
        action: str,
    ) -> dict:
        self._require(req, {SupplyRequestStatus.READY}, 'complete')
        req = self.orders.transition(
            db,
            req=req,
            to_status=SupplyRequestStatus.COMPLETED,
            completed_at=_now(),
            fulfilled_by_id=fulfilled_by_id,
            fulfillment_notes=_clean(notes),
        )
        residuals = self._settle(db, req=req, dispensed_quantities=dispensed_quantities, staff_id=actor_staff_id)
        self._issue_receipt(db, req.id, ReceiptType.FINAL)
        return self._record(
            db,
            req=req,
            action=action,
            actor_staff_id=actor_staff_id,
            notes=_clean(notes),
            metadata={'residuals': {str(item_id): qty for item_id, qty in residuals.items()}},
        )

    def reject(self, request_id: int, reason: str, *, staff_id: int | None = None) -> dict:
        clean_reason = _clean(reason)
        if not clean_reason:
            raise ValidationError('A rejection reason is required')

        with self._transaction('reject', request_id) as db:
            req = self.orders.get_request(db, request_id)
            self._require_open(req, 'reject')
            req = self.orders.transition(
                db,
                req=req,
                to_status=SupplyRequestStatus.REJECTED,
                rejection_reason=clean_reason,
            )
            detail = self._record(
                db,
                req=req,
                action='SUPPLY_REQUEST_REJECTED',
                actor_staff_id=staff_id,
                notes=clean_reason,
                metadata={'reason': clean_reason},
            )
        logger.info('Supply request %s rejected: %s', request_id, clean_reason)
        return self._publish(detail, 'rejected', staff_id)

    def request_approval(self, request_id: int, supervisor_id: int, *, staff_id: int | None = None) -> dict:
        with self._transaction('escalate', request_id) as db:
            req = self.orders.get_request(db, request_id)
            self._require_open(req, 'escalate')
            self.orders.ensure_staff(db, supervisor_id)
            req = self.orders.transition(
                db,
                req=req,
                to_status=SupplyRequestStatus.AWAITING_APPROVAL,
                supervisor_id=supervisor_id,
                approval_requested_at=_now(),
            )
            detail = self._record(
                db,
                req=req,
                action='SUPPLY_REQUEST_APPROVAL_REQUESTED',
                actor_staff_id=staff_id,
                metadata={'supervisor_id': supervisor_id},
            )
        return self._publish(detail, 'approval_requested', staff_id)

    def approve(self, request_id: int, supervisor_id: int, notes: str | None = None) -> dict:
        with self._transaction('approve', request_id) as db:
            req = self.orders.get_request(db, request_id)
            self._require(req, {SupplyRequestStatus.AWAITING_APPROVAL}, 'approve')
            if req.supervisor_id is not None and req.supervisor_id != supervisor_id:
                raise ValidationError(f'Supply request {request_id} is awaiting a different supervisor')
            req = self.orders.transition(
                db,
                req=req,
                to_status=SupplyRequestStatus.COMPLETED,
                completed_at=_now(),
                fulfilled_by_id=req.assigned_fulfiller_id or supervisor_id,
                fulfillment_notes=_clean(notes),
            )
            residuals = self._settle(db, req=req, dispensed_quantities=None, staff_id=supervisor_id)
            self._issue_receipt(db, req.id, ReceiptType.FINAL)
            detail = self._record(
                db,
                req=req,
                action='SUPPLY_REQUEST_APPROVED',
                actor_staff_id=supervisor_id,
                notes=_clean(notes),
                metadata={'residuals': {str(item_id): qty for item_id, qty in residuals.items()}},
            )
        logger.info('Supply request %s approved by supervisor %s', request_id, supervisor_id)
        return self._publish(detail, 'approved', supervisor_id)

    def submit_request(
        self,
        *,
        requester_id: int,
        title: str,
        items: list[RequestedItem],
        priority: SupplyRequestPriority | str = SupplyRequestPriority.MEDIUM,
        description: str | None = None,
    ) -> dict:
        with self._transaction('submit', None) as db:
            req = self.orders.create_request(
                db,
                requester_id=requester_id,
                title=title,
                items=items,
                priority=priority,
                description=description,
            )
            detail = self.orders.request_detail(db, req.id)
        logger.info('Supply request %s submitted by staff %s', detail['id'], requester_id)
        return self._publish(detail, 'submitted', requester_id)

    def create_item(
        self,
        *,
        name: str,
        quantity: int,
        minimum_quantity: int,
        unit: str,
        staff_id: int | None = None,
    ) -> dict:
        with self._ledger_write('create inventory item') as db:
            item = self.ledger.create_item(
                db,
                name=name,
                quantity=quantity,
                minimum_quantity=minimum_quantity,
                unit=unit,
                staff_id=staff_id,
            )
            return {'id': item.id, 'name': item.name, 'quantity': item.quantity, 'unit': item.unit}

    def adjust_stock(
        self,
        item_id: int,
        *,
        delta: int,
        kind: InventoryTransactionType | str,
        reason: str,
        allow_negative: bool = False,
        staff_id: int | None = None,
    ) -> dict:
        with self._ledger_write(f'adjust inventory item {item_id}') as db:
            txn = self.ledger.adjust(
                db,
                item_id=item_id,
                delta=delta,
                kind=kind,
                reason=reason,
                allow_negative=allow_negative,
                staff_id=staff_id,
            )
            row = transaction_row(txn)
        logger.info('Inventory item %s adjusted by %s (%s)', item_id, delta, row['transaction_type'])
        return row

    @contextmanager
    def _ledger_write(self, what: str) -> Iterator[Session]:
        try:
            with self.session_factory.begin() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error('Persistence failure while trying to %s: %s', what, exc)
            raise PersistenceError(f'Could not {what}') from exc

    def current_quantity(self, item_id: int) -> int:
        with self._read(f'inventory item {item_id}') as db:
            return self.ledger.current_quantity(db, item_id)

    def get_request(self, request_id: int) -> dict:
        with self._read(f'supply request {request_id}') as db:
            return self.orders.request_detail(db, request_id)

    def list_requests(self, *, status: SupplyRequestStatus | None = None, fulfiller_id: int | None = None) -> list[dict]:
        with self._read('supply requests') as db:
            return self.orders.list_requests(db, status=status, fulfiller_id=fulfiller_id)
