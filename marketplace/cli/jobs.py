#!/usr/bin/env python3
"""
CLI for batch jobs and back-office ledger operations.

Usage:
    python -m marketplace.cli.jobs expire-orders [--limit 100]
    python -m marketplace.cli.jobs fee-balance --vendor-id ven_123
    python -m marketplace.cli.jobs adjust-fees --vendor-id ven_123 --amount -250 --description "Goodwill credit"

Examples:
    # Expire pending items whose confirmation window has passed (for a system cron)
    python -m marketplace.cli.jobs expire-orders

    # Show a vendor's outstanding platform fees
    python -m marketplace.cli.jobs fee-balance --vendor-id ven_89baed550ed9
"""
import argparse
import asyncio
import logging
import sys

from marketplace.application.fee_ledger_service import VendorFeeLedger
from marketplace.config import settings
from marketplace.db import close_db, init_db
from marketplace.domain.entities import DomainError
from marketplace.domain.fees import FeeSchedule
from marketplace.infrastructure.expiry_scheduler import new_unit_of_work, run_expiry_sweep
from marketplace.infrastructure.task_queue import get_task_queue


async def expire_orders(limit):
    """Run one expiry batch; refunds and notifications are drained before exit."""
    await init_db()
    queue = get_task_queue()
    await queue.start()
    try:
        summary = await run_expiry_sweep(limit=limit)
        print(
            f"[SUCCESS] Expired {summary.expired} item(s), "
            f"{summary.conflicts} conflict(s), {summary.failed} failed"
        )
        for item_id in summary.expired_item_ids:
            print(f"  - {item_id}")
        return 0 if summary.failed == 0 else 1
    finally:
        await queue.stop(timeout=30.0)
        await close_db()


async def fee_balance(vendor_id):
    await init_db()
    ledger = VendorFeeLedger(FeeSchedule.from_settings(settings))
    try:
        async with new_unit_of_work() as uow:
            balance = await ledger.balance(uow, vendor_id)
            eligibility = await ledger.can_use_external_payments(uow, vendor_id)
            recent = await uow.fee_ledger.list_recent(vendor_id, limit=10)

        print(f"Vendor:            {vendor_id}")
        print(f"Balance:           {balance.balance_cents} cents")
        print(f"Oldest unpaid:     {balance.oldest_unpaid_at or '-'}")
        print(f"Requires payment:  {ledger.payment_required(balance)}")
        print(f"External payments: {'allowed' if eligibility.allowed else eligibility.reason}")
        print("-" * 60)
        for entry in recent:
            state = "paid" if entry.paid else "open"
            print(f"{entry.created_at:%Y-%m-%d %H:%M}  {entry.entry_type.value:<18} {entry.amount_cents:>8}  {state}")
        return 0
    except DomainError as e:
        print(f"[ERROR] {e}")
        return 1
    finally:
        await close_db()


async def adjust_fees(vendor_id, amount, description):
    await init_db()
    ledger = VendorFeeLedger(FeeSchedule.from_settings(settings))
    try:
        async with new_unit_of_work() as uow:
            entry = await ledger.record_adjustment(uow, vendor_id, amount, description)
        print(f"[SUCCESS] Recorded adjustment {entry.id} of {amount} cents for vendor {vendor_id}")
        return 0
    except DomainError as e:
        print(f"[ERROR] {e}")
        return 1
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(
        description='Marketplace batch jobs',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    expire_parser = subparsers.add_parser('expire-orders', help='Expire overdue pending order items')
    expire_parser.add_argument('--limit', type=int, help=f'Batch size (default {settings.expiry_batch_size})')

    balance_parser = subparsers.add_parser('fee-balance', help="Show a vendor's fee ledger balance")
    balance_parser.add_argument('--vendor-id', required=True, help='Vendor id')

    adjust_parser = subparsers.add_parser('adjust-fees', help='Append a manual fee ledger adjustment')
    adjust_parser.add_argument('--vendor-id', required=True, help='Vendor id')
    adjust_parser.add_argument('--amount', type=int, required=True, help='Signed cents (negative credits the vendor)')
    adjust_parser.add_argument('--description', required=True, help='Reason shown on the ledger')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command == 'expire-orders':
        exit_code = asyncio.run(expire_orders(args.limit))
    elif args.command == 'fee-balance':
        exit_code = asyncio.run(fee_balance(args.vendor_id))
    elif args.command == 'adjust-fees':
        exit_code = asyncio.run(adjust_fees(args.vendor_id, args.amount, args.description))
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
