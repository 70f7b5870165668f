from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from supply_desk.auth import FULFILLMENT_ROLES, SUPERVISOR_ROLES, Principal, get_current_principal, require_role
from supply_desk.dependencies import get_db, get_workflow
from supply_desk.models import ReceiptType, SupplyRequestPriority, SupplyRequestStatus
from supply_desk.services.audit_service import list_audit_entries
from supply_desk.services.fulfillment_workflow import FulfillmentWorkflow
from supply_desk.services.order_store_service import RequestedItem
from supply_desk.services.receipt_service import get_receipt

router = APIRouter(prefix='/supply-requests', tags=['supply-requests'])


class RequestLineIn(BaseModel):
    item_id: int
    quantity_requested: int = Field(gt=0)
    notes: str | None = None


class CreateRequestIn(BaseModel):
    title: str
    description: str | None = None
    priority: SupplyRequestPriority = SupplyRequestPriority.MEDIUM
    items: list[RequestLineIn]


class PickIn(BaseModel):
    item_id: int
    quantity_picked: int = Field(ge=0)


class ReadyIn(BaseModel):
    quantities: dict[int, int] | None = None


class CompleteIn(BaseModel):
    notes: str | None = None
    dispensed_quantities: dict[int, int] | None = None


class ConfirmPickupIn(BaseModel):
    notes: str | None = None


class RejectIn(BaseModel):
    reason: str


class ApprovalRequestIn(BaseModel):
    supervisor_id: int


class ApproveIn(BaseModel):
    notes: str | None = None


@router.get('')
def list_requests(
    status: SupplyRequestStatus | None = None,
    mine: bool = False,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.list_requests(status=status, fulfiller_id=principal.id if mine else None)


@router.post('', status_code=201)
def create_request(
    payload: CreateRequestIn,
    principal: Principal = Depends(get_current_principal),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.submit_request(
        requester_id=principal.id,
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        items=[
            RequestedItem(item_id=line.item_id, quantity_requested=line.quantity_requested, notes=line.notes)
            for line in payload.items
        ],
    )


@router.get('/{request_id}')
def request_detail(
    request_id: int,
    _: Principal = Depends(get_current_principal),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.get_request(request_id)


@router.post('/{request_id}/accept')
def accept_request(
    request_id: int,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.accept(request_id, principal.id)


@router.post('/{request_id}/picks')
def record_pick(
    request_id: int,
    payload: PickIn,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.record_pick(request_id, payload.item_id, payload.quantity_picked, staff_id=principal.id)


@router.post('/{request_id}/ready')
def mark_ready(
    request_id: int,
    payload: ReadyIn,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.mark_ready(request_id, payload.quantities, staff_id=principal.id)


@router.post('/{request_id}/complete')
def complete_request(
    request_id: int,
    payload: CompleteIn,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.complete(
        request_id,
        payload.notes,
        staff_id=principal.id,
        dispensed_quantities=payload.dispensed_quantities,
    )


@router.post('/{request_id}/confirm-pickup')
def confirm_pickup(
    request_id: int,
    payload: ConfirmPickupIn,
    principal: Principal = Depends(get_current_principal),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.confirm_pickup(request_id, principal.id, payload.notes)


@router.post('/{request_id}/reject')
def reject_request(
    request_id: int,
    payload: RejectIn,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.reject(request_id, payload.reason, staff_id=principal.id)


@router.post('/{request_id}/request-approval')
def request_approval(
    request_id: int,
    payload: ApprovalRequestIn,
    principal: Principal = Depends(require_role(*FULFILLMENT_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.request_approval(request_id, payload.supervisor_id, staff_id=principal.id)


@router.post('/{request_id}/approve')
def approve_request(
    request_id: int,
    payload: ApproveIn,
    principal: Principal = Depends(require_role(*SUPERVISOR_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    return workflow.approve(request_id, principal.id, payload.notes)


@router.get('/{request_id}/receipts/{kind}')
def receipt_detail(
    request_id: int,
    kind: ReceiptType,
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    receipt = get_receipt(db, request_id=request_id, kind=kind)
    if not receipt:
        raise HTTPException(status_code=404, detail='Receipt not found')
    return receipt


@router.get('/{request_id}/audit')
def audit_trail(
    request_id: int,
    _: Principal = Depends(require_role(*SUPERVISOR_ROLES)),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
    db: Session = Depends(get_db),
):
    workflow.orders.get_request(db, request_id)
    return list_audit_entries(db, request_id=request_id)
