from __future__ import annotations

import threading
import unittest

from db_fixtures import DatabaseTestCase

from supply_desk.errors import AlreadyAssignedError, ConflictError, NotFoundError
from supply_desk.models import StaffRole


class AssignmentCoordinatorTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.requester_id = self.add_staff('Dana Requester', StaffRole.REQUESTER)
        self.pens_id = self.add_item('Pens', 8)

    def test_accept_assigns_and_moves_to_received(self) -> None:
        aide_id = self.add_staff('Sam Aide')
        request_id = self.add_request(self.requester_id, [(self.pens_id, 2)])

        detail = self.workflow.accept(request_id, aide_id)

        self.assertEqual(detail['status'], 'RECEIVED')
        self.assertEqual(detail['assigned_fulfiller_id'], aide_id)
        self.assertIsNotNone(detail['work_started_at'])
        self.assertEqual(detail['version'], 2)

    def test_second_accept_reports_the_winner(self) -> None:
        first_id = self.add_staff('Sam Aide')
        second_id = self.add_staff('Jo Aide')
        request_id = self.add_request(self.requester_id, [(self.pens_id, 2)])
        self.workflow.accept(request_id, first_id)

        with self.assertRaises(AlreadyAssignedError) as ctx:
            self.workflow.accept(request_id, second_id)

        self.assertEqual(ctx.exception.fulfiller_id, first_id)
        self.assertEqual(self.workflow.get_request(request_id)['assigned_fulfiller_id'], first_id)

    def test_concurrent_accepts_have_exactly_one_winner(self) -> None:
        aide_ids = [self.add_staff(f'Aide {n}') for n in range(6)]
        request_id = self.add_request(self.requester_id, [(self.pens_id, 2)])
        winners: list[int] = []
        losers: list[AlreadyAssignedError] = []
        lock = threading.Lock()
        start = threading.Barrier(len(aide_ids))

        def worker(staff_id: int) -> None:
            start.wait()
            try:
                self.workflow.accept(request_id, staff_id)
            except AlreadyAssignedError as exc:
                with lock:
                    losers.append(exc)
            else:
                with lock:
                    winners.append(staff_id)

        threads = [threading.Thread(target=worker, args=(staff_id,)) for staff_id in aide_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), len(aide_ids) - 1)
        self.assertTrue(all(exc.fulfiller_id == winners[0] for exc in losers))

        detail = self.workflow.get_request(request_id)
        self.assertEqual(detail['assigned_fulfiller_id'], winners[0])
        self.assertEqual([row['status'] for row in detail['history']], ['SUBMITTED', 'RECEIVED'])
        self.assertEqual(len(self.sink.events), 1)

    def test_rejected_request_cannot_be_accepted(self) -> None:
        aide_id = self.add_staff('Sam Aide')
        request_id = self.add_request(self.requester_id, [(self.pens_id, 2)])
        self.workflow.reject(request_id, 'duplicate request')

        with self.assertRaises(ConflictError) as ctx:
            self.workflow.accept(request_id, aide_id)

        self.assertNotIsInstance(ctx.exception, AlreadyAssignedError)
        self.assertEqual(self.workflow.get_request(request_id)['status'], 'REJECTED')

    def test_accept_after_rejection_is_a_conflict(self) -> None:
        first_id = self.add_staff('Sam Aide')
        second_id = self.add_staff('Jo Aide')
        request_id = self.add_request(self.requester_id, [(self.pens_id, 2)])
        self.workflow.accept(request_id, first_id)
        self.workflow.reject(request_id, 'duplicate request')

        with self.assertRaises(ConflictError) as ctx:
            self.workflow.accept(request_id, second_id)

        self.assertNotIsInstance(ctx.exception, AlreadyAssignedError)
        self.assertEqual(self.workflow.get_request(request_id)['assigned_fulfiller_id'], first_id)

    def test_unknown_staff_member_is_not_found(self) -> None:
        request_id = self.add_request(self.requester_id, [(self.pens_id, 2)])

        with self.assertRaises(NotFoundError):
            self.workflow.accept(request_id, 99999)

        detail = self.workflow.get_request(request_id)
        self.assertEqual(detail['status'], 'SUBMITTED')
        self.assertIsNone(detail['assigned_fulfiller_id'])

    def test_unknown_request_is_not_found(self) -> None:
        aide_id = self.add_staff('Sam Aide')
        with self.assertRaises(NotFoundError):
            self.workflow.accept(4040, aide_id)


if __name__ == '__main__':
    unittest.main()
