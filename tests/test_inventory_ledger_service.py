from __future__ import annotations

import threading
import unittest
from unittest.mock import patch

from db_fixtures import DatabaseTestCase

from supply_desk import verify_ledger
from supply_desk.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from supply_desk.models import InventoryItem, InventoryTransactionType
from supply_desk.services.inventory_ledger_service import InventoryLedger


class InventoryLedgerTests(DatabaseTestCase):
    def test_opening_balance_is_recorded_as_add(self) -> None:
        item_id = self.add_item('Pens', 8)

        rows = self.transactions(item_id=item_id)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['transaction_type'], 'ADD')
        self.assertEqual((rows[0]['previous_quantity'], rows[0]['new_quantity']), (0, 8))
        self.assertEqual(self.stock(item_id), 8)

    def test_deduct_writes_quantity_and_chained_transaction(self) -> None:
        item_id = self.add_item('Paper', 40)

        with self.session_factory.begin() as db:
            txn = self.ledger.deduct(db, item_id=item_id, quantity=15, reference_id=None, notes='walk-up')

        self.assertEqual(txn.transaction_type, InventoryTransactionType.FULFILLED)
        self.assertEqual(txn.quantity, -15)
        self.assertEqual(txn.previous_quantity, 40)
        self.assertEqual(txn.new_quantity, 25)
        self.assertEqual(self.stock(item_id), 25)

    def test_deduct_exactly_available_leaves_zero(self) -> None:
        item_id = self.add_item('Toner', 3)

        with self.session_factory.begin() as db:
            self.ledger.deduct(db, item_id=item_id, quantity=3, reference_id=None)

        self.assertEqual(self.stock(item_id), 0)

    def test_deduct_more_than_available_changes_nothing(self) -> None:
        item_id = self.add_item('Toner', 3)
        before = self.transactions(item_id=item_id)

        with self.assertRaises(InsufficientStockError) as ctx:
            with self.session_factory.begin() as db:
                self.ledger.deduct(db, item_id=item_id, quantity=4, reference_id=None)

        self.assertEqual(ctx.exception.available, 3)
        self.assertEqual(ctx.exception.requested, 4)
        self.assertEqual(self.stock(item_id), 3)
        self.assertEqual(self.transactions(item_id=item_id), before)

    def test_deduct_requires_positive_quantity(self) -> None:
        item_id = self.add_item('Toner', 3)
        with self.session_factory.begin() as db:
            with self.assertRaises(ValidationError):
                self.ledger.deduct(db, item_id=item_id, quantity=0, reference_id=None)

    def test_unknown_item_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.stock(999)

    def test_adjust_kind_rules(self) -> None:
        item_id = self.add_item('Tape', 5)
        with self.session_factory.begin() as db:
            with self.assertRaises(ValidationError):
                self.ledger.adjust(db, item_id=item_id, delta=-1, kind='add', reason='typo')
            with self.assertRaises(ValidationError):
                self.ledger.adjust(db, item_id=item_id, delta=2, kind='remove', reason='typo')
            with self.assertRaises(ValidationError):
                self.ledger.adjust(db, item_id=item_id, delta=2, kind='add', reason='   ')
            with self.assertRaises(ValidationError):
                self.ledger.adjust(db, item_id=item_id, delta=-1, kind='fulfilled', reason='shortcut')
            with self.assertRaises(ValidationError):
                self.ledger.adjust(db, item_id=item_id, delta=-9, kind='remove', reason='x', allow_negative=True)

    def test_remove_below_zero_fails_without_override(self) -> None:
        item_id = self.add_item('Tape', 5)
        with self.assertRaises(InsufficientStockError):
            with self.session_factory.begin() as db:
                self.ledger.adjust(db, item_id=item_id, delta=-6, kind='remove', reason='damaged')
        self.assertEqual(self.stock(item_id), 5)

    def test_administrative_adjustment_may_go_negative(self) -> None:
        item_id = self.add_item('Tape', 5)
        with self.session_factory.begin() as db:
            self.ledger.adjust(
                db,
                item_id=item_id,
                delta=-7,
                kind=InventoryTransactionType.ADJUSTMENT,
                reason='physical count correction',
                allow_negative=True,
            )
        self.assertEqual(self.stock(item_id), -2)

    def test_replay_reproduces_current_quantity(self) -> None:
        item_id = self.add_item('Folders', 20)
        with self.session_factory.begin() as db:
            self.ledger.deduct(db, item_id=item_id, quantity=4, reference_id=None)
            self.ledger.adjust(db, item_id=item_id, delta=10, kind='add', reason='delivery')
            self.ledger.adjust(db, item_id=item_id, delta=-3, kind='remove', reason='damaged')
            self.ledger.adjust(db, item_id=item_id, delta=1, kind='adjustment', reason='recount')

        with self.session_factory() as db:
            self.assertEqual(self.ledger.replay_quantity(db, item_id=item_id), 24)
            result = self.ledger.verify_item(db, item_id=item_id)
        self.assertTrue(result.ok)
        self.assertEqual(result.current_quantity, 24)
        self.assertEqual(result.transaction_count, 5)

        rows = self.transactions(item_id=item_id)
        for previous, current in zip(rows, rows[1:]):
            self.assertEqual(current['previous_quantity'], previous['new_quantity'])

    def test_lost_race_rereads_and_retries(self) -> None:
        item_id = self.add_item('Staples', 10)
        real_read = self.ledger.current_quantity
        reads: list[int] = []

        def stale_then_real(db, item_id):
            reads.append(item_id)
            if len(reads) == 1:
                return 12
            return real_read(db, item_id)

        with self.session_factory.begin() as db:
            with patch.object(self.ledger, 'current_quantity', side_effect=stale_then_real):
                txn = self.ledger.deduct(db, item_id=item_id, quantity=3, reference_id=None)

        self.assertEqual(len(reads), 2)
        self.assertEqual((txn.previous_quantity, txn.new_quantity), (10, 7))
        self.assertEqual(self.stock(item_id), 7)

    def test_gives_up_after_max_retries(self) -> None:
        item_id = self.add_item('Staples', 10)
        ledger = InventoryLedger(max_retries=2)

        with self.assertRaises(ConflictError):
            with self.session_factory.begin() as db:
                with patch.object(ledger, 'current_quantity', return_value=50):
                    ledger.deduct(db, item_id=item_id, quantity=1, reference_id=None)
        self.assertEqual(self.stock(item_id), 10)

    def test_concurrent_deductions_never_oversell(self) -> None:
        item_id = self.add_item('Binder clips', 10)
        outcomes: list[str] = []
        lock = threading.Lock()
        start = threading.Barrier(8)

        def worker() -> None:
            start.wait()
            try:
                with self.session_factory.begin() as db:
                    self.ledger.deduct(db, item_id=item_id, quantity=2, reference_id=None)
                result = 'ok'
            except InsufficientStockError:
                result = 'short'
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count('ok'), 5)
        self.assertEqual(outcomes.count('short'), 3)
        self.assertEqual(self.stock(item_id), 0)
        with self.session_factory() as db:
            self.assertTrue(self.ledger.verify_item(db, item_id=item_id).ok)

    def test_verify_command_reports_mismatch(self) -> None:
        good_id = self.add_item('Pens', 8)
        bad_id = self.add_item('Toner', 2)
        with self.engine.begin() as conn:
            conn.execute(InventoryItem.__table__.update().where(InventoryItem.id == bad_id).values(quantity=5))

        with patch('supply_desk.verify_ledger.SessionLocal', self.session_factory):
            results = {result.item_id: result for result in verify_ledger.verify()}
            only_good = verify_ledger.verify(item_ids=[good_id])

        self.assertTrue(results[good_id].ok)
        self.assertFalse(results[bad_id].ok)
        self.assertEqual((results[bad_id].current_quantity, results[bad_id].replayed_quantity), (5, 2))
        self.assertEqual([result.item_id for result in only_good], [good_id])

    def test_low_stock_lists_items_at_or_below_minimum(self) -> None:
        self.add_item('Pens', 8, minimum_quantity=3)
        toner_id = self.add_item('Toner', 2, minimum_quantity=2)
        tape_id = self.add_item('Tape', 0, minimum_quantity=1)

        with self.session_factory() as db:
            rows = self.ledger.list_low_stock(db)

        self.assertEqual([row['id'] for row in rows], [tape_id, toner_id])
        self.assertTrue(rows[0]['out_of_stock'])
        self.assertFalse(rows[1]['out_of_stock'])


if __name__ == '__main__':
    unittest.main()
