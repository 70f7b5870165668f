from __future__ import annotations

import argparse
import sys

from supply_desk.db import SessionLocal
from supply_desk.logging_config import configure_logging
from supply_desk.services.inventory_ledger_service import InventoryLedger, LedgerVerification


def verify(*, item_ids: list[int] | None = None) -> list[LedgerVerification]:
    ledger = InventoryLedger()
    with SessionLocal() as db:
        if item_ids:
            return [ledger.verify_item(db, item_id=item_id) for item_id in item_ids]
        return ledger.verify_all(db)


def main() -> None:
    parser = argparse.ArgumentParser(description='Replay inventory transactions and compare against current stock.')
    parser.add_argument('--item', type=int, action='append', dest='item_ids', help='Only verify this item id (repeatable).')
    parser.add_argument('--quiet', action='store_true', help='Only print items that fail verification.')
    args = parser.parse_args()

    configure_logging()
    results = verify(item_ids=args.item_ids)
    failures = [result for result in results if not result.ok]
    for result in results:
        if args.quiet and result.ok:
            continue
        status = 'OK' if result.ok else 'MISMATCH'
        print(
            f'{status} item={result.item_id} current={result.current_quantity} '
            f'replayed={result.replayed_quantity} transactions={result.transaction_count} '
            f'chain_breaks={result.chain_breaks}'
        )
    print(f'Ledger verification complete: items={len(results)}, mismatches={len(failures)}')
    if failures:
        sys.exit(1)


if __name__ == '__main__':
    main()
