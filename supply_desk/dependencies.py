from collections.abc import Iterator

from fastapi import Request
from sqlalchemy.orm import Session

from supply_desk.services.fulfillment_workflow import FulfillmentWorkflow


def get_workflow(request: Request) -> FulfillmentWorkflow:
    return request.app.state.workflow


def get_db(request: Request) -> Iterator[Session]:
    with request.app.state.session_factory() as db:
        yield db
