from sqlalchemy import select

from supply_desk.db import SessionLocal, engine, init_db
from supply_desk.models import InventoryItem, StaffMember, StaffRole, SupplyRequest
from supply_desk.services.inventory_ledger_service import InventoryLedger
from supply_desk.services.order_store_service import OrderStore, RequestedItem

DEMO_STAFF = [
    ('Dana Requester', StaffRole.REQUESTER, 'dana@example.org', 'Clerk of Court'),
    ('Sam Aide', StaffRole.FULFILLER, 'sam@example.org', 'Court Aides'),
    ('Riley Supervisor', StaffRole.SUPERVISOR, 'riley@example.org', 'Facilities'),
    ('Admin User', StaffRole.ADMIN, 'admin@example.org', 'Facilities'),
]

DEMO_ITEMS = [
    ('Pens (box of 12)', 8, 3, 'box'),
    ('Copy paper (ream)', 40, 10, 'ream'),
    ('Legal pads', 25, 5, 'pad'),
    ('Toner cartridge', 2, 2, 'each'),
]


def seed() -> None:
    init_db(engine)
    ledger = InventoryLedger()
    orders = OrderStore()

    with SessionLocal() as db:
        staff_by_name = {}
        for full_name, role, email, department in DEMO_STAFF:
            staff = db.execute(select(StaffMember).where(StaffMember.full_name == full_name)).scalar_one_or_none()
            if not staff:
                staff = StaffMember(full_name=full_name, role=role, email=email, department=department, active=True)
                db.add(staff)
                db.flush()
            staff_by_name[full_name] = staff

        items = []
        for name, quantity, minimum, unit in DEMO_ITEMS:
            item = db.execute(select(InventoryItem).where(InventoryItem.name == name)).scalar_one_or_none()
            if not item:
                item = ledger.create_item(db, name=name, quantity=quantity, minimum_quantity=minimum, unit=unit)
            items.append(item)

        has_request = db.execute(select(SupplyRequest.id).limit(1)).first()
        if not has_request:
            orders.create_request(
                db,
                requester_id=staff_by_name['Dana Requester'].id,
                title='Courtroom 4 restock',
                priority='HIGH',
                items=[
                    RequestedItem(item_id=items[0].id, quantity_requested=10),
                    RequestedItem(item_id=items[1].id, quantity_requested=5),
                ],
            )

        db.commit()


def main() -> None:
    seed()
    print('Seed data inserted/verified.')


if __name__ == '__main__':
    main()
