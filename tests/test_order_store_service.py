from __future__ import annotations

import unittest

from db_fixtures import DatabaseTestCase

from supply_desk.errors import ConflictError, NotFoundError, ValidationError
from supply_desk.models import StaffRole, SupplyRequestStatus
from supply_desk.services.order_store_service import RequestedItem


class OrderStoreTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.requester_id = self.add_staff('Dana Requester', StaffRole.REQUESTER)
        self.pens_id = self.add_item('Pens', 8)
        self.paper_id = self.add_item('Paper', 40)

    def create(self, items, **kwargs):
        with self.session_factory.begin() as db:
            return self.orders.create_request(
                db,
                requester_id=kwargs.pop('requester_id', self.requester_id),
                title=kwargs.pop('title', 'Jury room'),
                items=items,
                **kwargs,
            )

    def test_create_request_starts_submitted_with_history(self) -> None:
        req = self.create(
            [RequestedItem(self.pens_id, 3), RequestedItem(self.paper_id, 2, notes='letter size')],
            priority='urgent',
            description='  ',
        )

        detail = self.workflow.get_request(req.id)
        self.assertEqual(detail['status'], 'SUBMITTED')
        self.assertEqual(detail['priority'], 'URGENT')
        self.assertIsNone(detail['description'])
        self.assertIsNone(detail['assigned_fulfiller_id'])
        self.assertEqual(detail['version'], 1)
        self.assertEqual([line['quantity_fulfilled'] for line in detail['items']], [0, 0])
        self.assertEqual(detail['items'][1]['notes'], 'letter size')
        self.assertEqual([row['status'] for row in detail['history']], ['SUBMITTED'])

    def test_create_request_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.create([RequestedItem(self.pens_id, 1)], title='   ')
        with self.assertRaises(ValidationError):
            self.create([])
        with self.assertRaises(ValidationError):
            self.create([RequestedItem(self.pens_id, 1), RequestedItem(self.pens_id, 2)])
        with self.assertRaises(ValidationError):
            self.create([RequestedItem(self.pens_id, 0)])
        with self.assertRaises(ValidationError):
            self.create([RequestedItem(self.pens_id, 1)], priority='whenever')
        with self.assertRaises(NotFoundError):
            self.create([RequestedItem(999, 1)])
        with self.assertRaises(NotFoundError):
            self.create([RequestedItem(self.pens_id, 1)], requester_id=999)
        self.assertEqual(self.workflow.list_requests(), [])

    def test_stale_transition_is_a_conflict(self) -> None:
        request_id = self.add_request(self.requester_id, [(self.pens_id, 1)])

        with self.session_factory() as db:
            stale = self.orders.get_request(db, request_id)

        self.workflow.reject(request_id, 'duplicate')

        with self.assertRaises(ConflictError):
            with self.session_factory.begin() as db:
                self.orders.transition(db, req=stale, to_status=SupplyRequestStatus.RECEIVED)

        self.assertEqual(self.workflow.get_request(request_id)['status'], 'REJECTED')

    def test_transition_bumps_version(self) -> None:
        request_id = self.add_request(self.requester_id, [(self.pens_id, 1)])

        with self.session_factory.begin() as db:
            req = self.orders.get_request(db, request_id)
            moved = self.orders.transition(
                db, req=req, to_status=SupplyRequestStatus.AWAITING_APPROVAL, supervisor_id=self.requester_id
            )
            self.assertEqual(moved.version, 2)
            self.assertEqual(moved.status, SupplyRequestStatus.AWAITING_APPROVAL)

    def test_list_requests_filters_by_status_and_fulfiller(self) -> None:
        aide_id = self.add_staff('Sam Aide')
        first = self.add_request(self.requester_id, [(self.pens_id, 1)], title='First')
        second = self.add_request(self.requester_id, [(self.paper_id, 1)], title='Second')
        self.workflow.accept(first, aide_id)

        submitted = self.workflow.list_requests(status=SupplyRequestStatus.SUBMITTED)
        mine = self.workflow.list_requests(fulfiller_id=aide_id)

        self.assertEqual([row['id'] for row in submitted], [second])
        self.assertEqual([row['id'] for row in mine], [first])


if __name__ == '__main__':
    unittest.main()
