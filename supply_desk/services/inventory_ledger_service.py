from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from supply_desk.config import settings
from supply_desk.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from supply_desk.models import InventoryItem, InventoryTransaction, InventoryTransactionType

logger = logging.getLogger(__name__)

MANUAL_KINDS = frozenset(
    {InventoryTransactionType.ADD, InventoryTransactionType.REMOVE, InventoryTransactionType.ADJUSTMENT}
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _coerce_kind(kind: InventoryTransactionType | str) -> InventoryTransactionType:
    if isinstance(kind, InventoryTransactionType):
        return kind
    try:
        return InventoryTransactionType(str(kind).strip().upper())
    except ValueError as exc:
        raise ValidationError(f'Unknown transaction type: {kind}') from exc


def transaction_row(txn: InventoryTransaction) -> dict:
    return {
        'id': txn.id,
        'item_id': txn.item_id,
        'transaction_type': txn.transaction_type.value,
        'quantity': txn.quantity,
        'previous_quantity': txn.previous_quantity,
        'new_quantity': txn.new_quantity,
        'reference_id': txn.reference_id,
        'notes': txn.notes,
        'created_by_staff_id': txn.created_by_staff_id,
        'created_at': txn.created_at,
    }


@dataclass
class LedgerVerification:
    item_id: int
    current_quantity: int
    replayed_quantity: int
    transaction_count: int
    chain_breaks: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.chain_breaks and self.current_quantity == self.replayed_quantity


class InventoryLedger:
    """Sole writer of ``InventoryItem.quantity``.

    Every stock change is a conditional update keyed on the quantity that was
    read, paired with an appended ``InventoryTransaction`` row in the caller's
    transaction. A lost race re-reads and retries, so each row's
    ``previous_quantity`` chains to the prior row's ``new_quantity``.
    """

    def __init__(self, *, max_retries: int | None = None) -> None:
        self.max_retries = max_retries if max_retries is not None else settings.ledger_max_retries

    def current_quantity(self, db: Session, item_id: int) -> int:
        quantity = db.execute(select(InventoryItem.quantity).where(InventoryItem.id == item_id)).scalar_one_or_none()
        if quantity is None:
            raise NotFoundError(f'Inventory item {item_id} not found')
        return quantity

    def deduct(
        self,
        db: Session,
        *,
        item_id: int,
        quantity: int,
        reference_id: int | None,
        notes: str | None = None,
        staff_id: int | None = None,
    ) -> InventoryTransaction:
        if quantity <= 0:
            raise ValidationError('Deduction quantity must be greater than zero')
        return self._apply(
            db,
            item_id=item_id,
            delta=-quantity,
            kind=InventoryTransactionType.FULFILLED,
            reference_id=reference_id,
            notes=notes,
            staff_id=staff_id,
            allow_negative=False,
        )

    def adjust(
        self,
        db: Session,
        *,
        item_id: int,
        delta: int,
        kind: InventoryTransactionType | str,
        reason: str,
        reference_id: int | None = None,
        allow_negative: bool = False,
        staff_id: int | None = None,
    ) -> InventoryTransaction:
        kind = _coerce_kind(kind)
        if kind not in MANUAL_KINDS:
            raise ValidationError('Fulfillment deductions must go through deduct()')
        if delta == 0:
            raise ValidationError('Adjustment quantity cannot be zero')
        if kind == InventoryTransactionType.ADD and delta < 0:
            raise ValidationError('An add must increase stock')
        if kind == InventoryTransactionType.REMOVE and delta > 0:
            raise ValidationError('A removal must decrease stock')
        if allow_negative and kind != InventoryTransactionType.ADJUSTMENT:
            raise ValidationError('Negative stock is only allowed for administrative adjustments')
        clean_reason = (reason or '').strip()
        if not clean_reason:
            raise ValidationError('A reason is required for stock adjustments')

        return self._apply(
            db,
            item_id=item_id,
            delta=delta,
            kind=kind,
            reference_id=reference_id,
            notes=clean_reason,
            staff_id=staff_id,
            allow_negative=allow_negative,
        )

    def _apply(
        self,
        db: Session,
        *,
        item_id: int,
        delta: int,
        kind: InventoryTransactionType,
        reference_id: int | None,
        notes: str | None,
        staff_id: int | None,
        allow_negative: bool,
    ) -> InventoryTransaction:
        for attempt in range(1, self.max_retries + 1):
            previous = self.current_quantity(db, item_id)
            new = previous + delta
            if new < 0 and not allow_negative:
                raise InsufficientStockError(item_id, previous, -delta)

            result = db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == item_id, InventoryItem.quantity == previous)
                .values(quantity=new, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(
                    'Stock for item %s moved from %s during %s (attempt %s/%s); retrying',
                    item_id,
                    previous,
                    kind.value,
                    attempt,
                    self.max_retries,
                )
                continue

            txn = InventoryTransaction(
                item_id=item_id,
                transaction_type=kind,
                quantity=delta,
                previous_quantity=previous,
                new_quantity=new,
                reference_id=reference_id,
                notes=notes,
                created_by_staff_id=staff_id,
                created_at=_now(),
            )
            db.add(txn)
            db.flush()
            logger.info(
                'Ledger %s item=%s delta=%s %s->%s reference=%s', kind.value, item_id, delta, previous, new, reference_id
            )
            return txn

        raise ConflictError(f'Stock for item {item_id} kept changing; gave up after {self.max_retries} attempts')

    def create_item(
        self,
        db: Session,
        *,
        name: str,
        quantity: int = 0,
        minimum_quantity: int = 0,
        unit: str = 'each',
        staff_id: int | None = None,
    ) -> InventoryItem:
        clean_name = (name or '').strip()
        if not clean_name:
            raise ValidationError('Item name is required')
        if quantity < 0:
            raise ValidationError('Opening quantity cannot be negative')
        if minimum_quantity < 0:
            raise ValidationError('Minimum quantity cannot be negative')

        now = _now()
        item = InventoryItem(
            name=clean_name,
            quantity=0,
            minimum_quantity=minimum_quantity,
            unit=(unit or 'each').strip() or 'each',
            active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(item)
        db.flush()
        if quantity > 0:
            self.adjust(
                db,
                item_id=item.id,
                delta=quantity,
                kind=InventoryTransactionType.ADD,
                reason='Opening balance',
                staff_id=staff_id,
            )
            db.refresh(item)
        return item

    def list_transactions(
        self,
        db: Session,
        *,
        item_id: int | None = None,
        reference_id: int | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        query = select(InventoryTransaction).order_by(InventoryTransaction.id.asc())
        if item_id is not None:
            query = query.where(InventoryTransaction.item_id == item_id)
        if reference_id is not None:
            query = query.where(InventoryTransaction.reference_id == reference_id)
        if limit:
            query = query.limit(limit)
        return [transaction_row(txn) for txn in db.execute(query).scalars().all()]

    def net_dispensed(self, db: Session, *, item_id: int, reference_id: int) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(InventoryTransaction.quantity), 0)).where(
                InventoryTransaction.item_id == item_id,
                InventoryTransaction.reference_id == reference_id,
            )
        ).scalar_one()
        return -int(total)

    def replay_quantity(self, db: Session, *, item_id: int, initial_quantity: int = 0) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(InventoryTransaction.quantity), 0)).where(
                InventoryTransaction.item_id == item_id
            )
        ).scalar_one()
        return initial_quantity + int(total)

    def verify_item(self, db: Session, *, item_id: int) -> LedgerVerification:
        current = self.current_quantity(db, item_id)
        rows = db.execute(
            select(InventoryTransaction)
            .where(InventoryTransaction.item_id == item_id)
            .order_by(InventoryTransaction.id.asc())
        ).scalars().all()

        breaks: list[int] = []
        running = 0
        for txn in rows:
            if txn.previous_quantity != running or txn.new_quantity - txn.previous_quantity != txn.quantity:
                breaks.append(txn.id)
            running = txn.new_quantity
        replayed = sum(txn.quantity for txn in rows)
        return LedgerVerification(
            item_id=item_id,
            current_quantity=current,
            replayed_quantity=replayed,
            transaction_count=len(rows),
            chain_breaks=breaks,
        )

    def verify_all(self, db: Session) -> list[LedgerVerification]:
        item_ids = db.execute(select(InventoryItem.id).order_by(InventoryItem.id.asc())).scalars().all()
        return [self.verify_item(db, item_id=item_id) for item_id in item_ids]

    def list_low_stock(self, db: Session) -> list[dict]:
        rows = db.execute(
            select(InventoryItem)
            .where(InventoryItem.active.is_(True), InventoryItem.quantity <= InventoryItem.minimum_quantity)
            .order_by(InventoryItem.quantity.asc(), InventoryItem.name.asc())
        ).scalars().all()
        return [
            {
                'id': item.id,
                'name': item.name,
                'quantity': item.quantity,
                'minimum_quantity': item.minimum_quantity,
                'unit': item.unit,
                'out_of_stock': item.quantity <= 0,
            }
            for item in rows
        ]
