from __future__ import annotations

import tempfile
import unittest

from sqlalchemy.orm import Session, sessionmaker

from supply_desk.db import build_engine, build_session_factory, init_db
from supply_desk.models import StaffMember, StaffRole
from supply_desk.services.fulfillment_workflow import FulfillmentWorkflow
from supply_desk.services.inventory_ledger_service import InventoryLedger
from supply_desk.services.notification_service import RequestChanged
from supply_desk.services.order_store_service import OrderStore, RequestedItem


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[RequestChanged] = []

    def publish(self, event: RequestChanged) -> None:
        self.events.append(event)


class DatabaseTestCase(unittest.TestCase):
    """Fresh file-backed SQLite database per test, so threads get real separate connections."""

    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        engine = build_engine(f'sqlite:///{tmpdir.name}/supply_desk.db')
        self.addCleanup(engine.dispose)
        init_db(engine)
        self.engine = engine
        self.session_factory: sessionmaker[Session] = build_session_factory(engine)
        self.ledger = InventoryLedger()
        self.orders = OrderStore()
        self.sink = RecordingSink()
        self.workflow = FulfillmentWorkflow(
            self.session_factory,
            ledger=self.ledger,
            orders=self.orders,
            change_sink=self.sink,
        )

    def add_staff(self, full_name: str, role: StaffRole = StaffRole.FULFILLER) -> int:
        with self.session_factory.begin() as db:
            staff = StaffMember(full_name=full_name, role=role, email=None, department='Facilities', active=True)
            db.add(staff)
            db.flush()
            return staff.id

    def add_item(self, name: str, quantity: int, *, minimum_quantity: int = 0, unit: str = 'each') -> int:
        with self.session_factory.begin() as db:
            item = self.ledger.create_item(
                db, name=name, quantity=quantity, minimum_quantity=minimum_quantity, unit=unit
            )
            return item.id

    def add_request(self, requester_id: int, lines: list[tuple[int, int]], *, title: str = 'Courtroom restock') -> int:
        with self.session_factory.begin() as db:
            req = self.orders.create_request(
                db,
                requester_id=requester_id,
                title=title,
                items=[RequestedItem(item_id=item_id, quantity_requested=qty) for item_id, qty in lines],
            )
            return req.id

    def stock(self, item_id: int) -> int:
        return self.workflow.current_quantity(item_id)

    def transactions(self, **filters) -> list[dict]:
        with self.session_factory() as db:
            return self.ledger.list_transactions(db, **filters)

    def line(self, detail: dict, item_id: int) -> dict:
        return next(line for line in detail['items'] if line['item_id'] == item_id)
