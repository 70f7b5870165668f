from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from supply_desk.auth import SUPERVISOR_ROLES, Principal, Role, get_current_principal, require_role
from supply_desk.dependencies import get_db, get_workflow
from supply_desk.models import InventoryTransactionType
from supply_desk.services.fulfillment_workflow import FulfillmentWorkflow

router = APIRouter(prefix='/inventory', tags=['inventory'])


class CreateItemIn(BaseModel):
    name: str
    quantity: int = Field(default=0, ge=0)
    minimum_quantity: int = Field(default=0, ge=0)
    unit: str = 'each'


class AdjustmentIn(BaseModel):
    delta: int
    kind: InventoryTransactionType
    reason: str
    allow_negative: bool = False


@router.get('/low-stock')
def low_stock(
    _: Principal = Depends(get_current_principal),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
    db: Session = Depends(get_db),
):
    return workflow.ledger.list_low_stock(db)


@router.post('', status_code=201)
def create_item(
    payload: CreateItemIn,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.create_item(
        name=payload.name,
        quantity=payload.quantity,
        minimum_quantity=payload.minimum_quantity,
        unit=payload.unit,
        staff_id=principal.id,
    )


@router.get('/{item_id}')
def current_quantity(
    item_id: int,
    _: Principal = Depends(get_current_principal),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return {'item_id': item_id, 'quantity': workflow.current_quantity(item_id)}


@router.get('/{item_id}/transactions')
def item_transactions(
    item_id: int,
    limit: int = 200,
    _: Principal = Depends(require_role(*SUPERVISOR_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
    db: Session = Depends(get_db),
):
    workflow.ledger.current_quantity(db, item_id)
    return workflow.ledger.list_transactions(db, item_id=item_id, limit=limit)


@router.post('/{item_id}/adjustments', status_code=201)
def adjust_stock(
    item_id: int,
    payload: AdjustmentIn,
    principal: Principal = Depends(require_role(*SUPERVISOR_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.adjust_stock(
        item_id,
        delta=payload.delta,
        kind=payload.kind,
        reason=payload.reason,
        allow_negative=payload.allow_negative,
        staff_id=principal.id,
    )


@router.get('/{item_id}/verify')
def verify_item(
    item_id: int,
    _: Principal = Depends(require_role(*SUPERVISOR_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
    db: Session = Depends(get_db),
):
    result = workflow.ledger.verify_item(db, item_id=item_id)
    return {**asdict(result), 'ok': result.ok}
