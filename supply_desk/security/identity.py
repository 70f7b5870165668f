from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select

from supply_desk.auth import Principal, Role
from supply_desk.config import settings
from supply_desk.models import StaffMember

IDENTITY_EXEMPT_PATHS = {'/health', '/robots.txt'}


def load_principal(db, staff_id_raw: str | None) -> Principal | None:
    raw = (staff_id_raw or '').strip()
    if not raw.isdigit():
        return None

    staff = db.execute(select(StaffMember).where(StaffMember.id == int(raw))).scalar_one_or_none()
    if not staff:
        return None
    role = Role(staff.role.value if hasattr(staff.role, 'value') else staff.role)
    return Principal(
        id=staff.id,
        full_name=staff.full_name,
        role=role,
        active=staff.active,
    )


def install_identity_middleware(app: FastAPI) -> None:
    """Resolve the acting staff member from the header set by the upstream identity provider."""

    @app.middleware('http')
    async def identity_middleware(request: Request, call_next):
        with request.app.state.session_factory() as db:
            request.state.principal = load_principal(db, request.headers.get(settings.identity_header))

        if request.url.path not in IDENTITY_EXEMPT_PATHS and request.state.principal is None:
            return JSONResponse({'detail': 'Unknown or missing staff identity'}, status_code=401)

        response = await call_next(request)
        return response
