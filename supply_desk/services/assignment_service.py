from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from supply_desk.errors import AlreadyAssignedError, ConflictError, NotFoundError
from supply_desk.models import TERMINAL_STATUSES, SupplyRequest, SupplyRequestStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class AssignmentCoordinator:
    def try_assign(self, db: Session, *, request_id: int, staff_id: int) -> None:
        """Claim a submitted request for ``staff_id``.

        One conditional update on ``(status, assigned_fulfiller_id)``: of any
        number of concurrent callers exactly one matches the row, the rest see
        the winner's fulfiller and get ``AlreadyAssignedError``.
        """
        now = _now()
        result = db.execute(
            update(SupplyRequest)
            .where(
                SupplyRequest.id == request_id,
                SupplyRequest.status == SupplyRequestStatus.SUBMITTED,
                SupplyRequest.assigned_fulfiller_id.is_(None),
            )
            .values(
                assigned_fulfiller_id=staff_id,
                status=SupplyRequestStatus.RECEIVED,
                work_started_at=now,
                version=SupplyRequest.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info('Supply request %s assigned to staff %s', request_id, staff_id)
            return

        row = db.execute(
            select(SupplyRequest.status, SupplyRequest.assigned_fulfiller_id).where(SupplyRequest.id == request_id)
        ).one_or_none()
        if row is None:
            raise NotFoundError(f'Supply request {request_id} not found')
        status, fulfiller_id = row
        if fulfiller_id is not None and status not in TERMINAL_STATUSES:
            logger.info('Staff %s lost assignment of request %s to staff %s', staff_id, request_id, fulfiller_id)
            raise AlreadyAssignedError(request_id, fulfiller_id)
        raise ConflictError(f'Supply request {request_id} is {status.value}, not SUBMITTED')
