"""
Vendor Fee Ledger - running balance of platform fees a vendor owes.

Fees on externally-paid orders (cash, P2P apps) are never captured at
charge time, so they accumulate here as unpaid charges. They are settled
oldest-first either by withholding part of a later processor payout
(auto-deduction) or by the vendor paying an invoice.

The ledger is append-only. Settling never edits an amount: it appends a
negative payout_deduction entry and flips the paid flag on the charges it
covers, so outstanding balance == sum of unpaid amounts at all times.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from marketplace.domain.entities import (
    InvalidInputError,
    VendorFeeLedgerEntry,
    VendorNotFoundError,
    utcnow,
)
from marketplace.domain.fees import FeeSchedule, auto_deduct_amount
from marketplace.domain.unit_of_work import AbstractUnitOfWork
from marketplace.domain.value_objects import LedgerEntryType, new_id

logger = logging.getLogger(__name__)


@dataclass
class LedgerBalance:
    vendor_id: str
    balance_cents: int
    oldest_unpaid_at: Optional[datetime]  # oldest unpaid charge
    unpaid_count: int


@dataclass
class ExternalPaymentEligibility:
    allowed: bool
    reason: Optional[str] = None  # payment_account_required | fee_balance_due


class VendorFeeLedger:
    """
    Application service for the vendor fee ledger.

    Reads are not snapshot-consistent with in-flight writes from other
    transactions; requires_payment is a read-time policy only.
    """

    def __init__(self, schedule: FeeSchedule, clock: Callable[[], datetime] = utcnow):
        self._schedule = schedule
        self._clock = clock

    async def record_charge(
        self,
        uow: AbstractUnitOfWork,
        vendor_id: str,
        order_id: Optional[str],
        amount_cents: int,
        description: str
    ) -> VendorFeeLedgerEntry:
        """
        Append an unpaid charge.

        Raises:
            InvalidInputError: If amount_cents is not positive integer cents
            VendorNotFoundError: If the vendor does not exist
        """
        await self._require_vendor(uow, vendor_id)
        entry = VendorFeeLedgerEntry(
            id=new_id("fee"),
            vendor_id=vendor_id,
            order_id=order_id,
            amount_cents=amount_cents,
            entry_type=LedgerEntryType.CHARGE,
            description=description,
            created_at=self._clock(),
        )
        await uow.fee_ledger.add(entry)
        logger.info(f"📒 Charged vendor {vendor_id} {amount_cents} for order {order_id}")
        return entry

    async def record_adjustment(
        self,
        uow: AbstractUnitOfWork,
        vendor_id: str,
        amount_cents: int,
        description: str,
        order_id: Optional[str] = None
    ) -> VendorFeeLedgerEntry:
        """Append a signed manual adjustment (positive adds to the balance)."""
        await self._require_vendor(uow, vendor_id)
        entry = VendorFeeLedgerEntry(
            id=new_id("fee"),
            vendor_id=vendor_id,
            order_id=order_id,
            amount_cents=amount_cents,
            entry_type=LedgerEntryType.MANUAL_ADJUSTMENT,
            description=description,
            created_at=self._clock(),
        )
        await uow.fee_ledger.add(entry)
        logger.info(f"📒 Adjusted vendor {vendor_id} balance by {amount_cents}: {description}")
        return entry

    async def balance(self, uow: AbstractUnitOfWork, vendor_id: str) -> LedgerBalance:
        unpaid = await uow.fee_ledger.list_unpaid(vendor_id)
        charges = [entry for entry in unpaid if entry.amount_cents > 0]
        return LedgerBalance(
            vendor_id=vendor_id,
            balance_cents=sum(entry.amount_cents for entry in unpaid),
            oldest_unpaid_at=min((entry.created_at for entry in charges), default=None),
            unpaid_count=len(unpaid),
        )

    def payment_required(self, balance: LedgerBalance, now: Optional[datetime] = None) -> bool:
        """Invoice trigger: balance threshold reached, or the oldest unpaid charge is too old."""
        if balance.balance_cents <= 0:
            return False
        if balance.balance_cents >= self._schedule.balance_invoice_threshold_cents:
            return True
        if balance.oldest_unpaid_at is None:
            return False
        age = (now or self._clock()) - balance.oldest_unpaid_at
        return age >= timedelta(days=self._schedule.age_invoice_threshold_days)

    async def requires_payment(self, uow: AbstractUnitOfWork, vendor_id: str) -> bool:
        return self.payment_required(await self.balance(uow, vendor_id))

    async def can_use_external_payments(
        self,
        uow: AbstractUnitOfWork,
        vendor_id: str
    ) -> ExternalPaymentEligibility:
        """
        Vendors may accept cash/P2P payments only with a connected payment
        account (so fees can be auto-deducted) and no fee balance due.
        """
        vendor = await self._require_vendor(uow, vendor_id)
        if not vendor.has_payment_account:
            return ExternalPaymentEligibility(allowed=False, reason="payment_account_required")
        if await self.requires_payment(uow, vendor_id):
            return ExternalPaymentEligibility(allowed=False, reason="fee_balance_due")
        return ExternalPaymentEligibility(allowed=True)

    async def apply_auto_deduction(
        self,
        uow: AbstractUnitOfWork,
        vendor_id: str,
        payout_cents: int,
        order_id: Optional[str] = None
    ) -> int:
        """
        Withhold part of a payout against the outstanding balance.

        Never more than AUTO_DEDUCT_MAX_PERCENT of the payout.

        Returns:
            Amount deducted; the caller subtracts it from the transfer
        """
        current = await self.balance(uow, vendor_id)
        amount = auto_deduct_amount(payout_cents, current.balance_cents, self._schedule.auto_deduct_max_percent)
        if amount == 0:
            return 0

        await self._settle(uow, vendor_id, amount, order_id, f"Auto-deducted from payout ({payout_cents})")
        logger.info(
            f"✂️  Auto-deducted {amount} from vendor {vendor_id} payout of {payout_cents} "
            f"(balance was {current.balance_cents})"
        )
        return amount

    async def record_payment(
        self,
        uow: AbstractUnitOfWork,
        vendor_id: str,
        amount_cents: int,
        reference: str
    ) -> VendorFeeLedgerEntry:
        """
        Record a fee payment made by the vendor (invoice paid through the processor).

        Raises:
            InvalidInputError: If amount_cents is not positive
            VendorNotFoundError: If the vendor does not exist
        """
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidInputError(f"Payment amount must be positive integer cents, got {amount_cents!r}")
        await self._require_vendor(uow, vendor_id)

        entries = await self._settle(uow, vendor_id, amount_cents, None, f"Fee payment {reference}")
        logger.info(f"💰 Vendor {vendor_id} paid {amount_cents} in fees ({reference})")
        return entries[-1]

    async def _settle(
        self,
        uow: AbstractUnitOfWork,
        vendor_id: str,
        amount_cents: int,
        order_id: Optional[str],
        description: str
    ) -> List[VendorFeeLedgerEntry]:
        """
        Apply a payment of amount_cents to unpaid charges, oldest first.

        Charges are covered whole: settlement stops at the first charge that
        no longer fits. Open credits (earlier partial payments) are pooled
        with the new amount. The part of the payment that covered charges is
        appended as a paid deduction; the rest stays open as an unpaid
        credit against future charges. Deduction entries always total
        -amount_cents, so the balance drops by exactly that amount.
        """
        now = self._clock()
        unpaid = await uow.fee_ledger.list_unpaid(vendor_id)
        open_credits = [entry for entry in unpaid if entry.amount_cents < 0]
        credit_pool = -sum(entry.amount_cents for entry in open_credits)
        pool = credit_pool + amount_cents

        covered: List[VendorFeeLedgerEntry] = []
        covered_total = 0
        for entry in unpaid:
            if entry.amount_cents <= 0:
                continue
            if covered_total + entry.amount_cents > pool:
                break
            covered.append(entry)
            covered_total += entry.amount_cents

        appended: List[VendorFeeLedgerEntry] = []
        if covered_total > 0 and covered_total >= credit_pool:
            await uow.fee_ledger.mark_paid(
                [entry.id for entry in covered + open_credits],
                now
            )
            applied = covered_total - credit_pool
            if applied > 0:
                appended.append(self._deduction(vendor_id, -applied, order_id, description, now, paid=True))
            remainder = amount_cents - applied
            if remainder > 0:
                appended.append(self._deduction(vendor_id, -remainder, order_id, description, now, paid=False))
            logger.debug(
                f"Settled {len(covered)} charge(s) totalling {covered_total} for vendor {vendor_id}"
            )
        else:
            appended.append(self._deduction(vendor_id, -amount_cents, order_id, description, now, paid=False))

        for entry in appended:
            await uow.fee_ledger.add(entry)
        return appended

    @staticmethod
    def _deduction(
        vendor_id: str,
        amount_cents: int,
        order_id: Optional[str],
        description: str,
        now: datetime,
        paid: bool
    ) -> VendorFeeLedgerEntry:
        return VendorFeeLedgerEntry(
            id=new_id("fee"),
            vendor_id=vendor_id,
            order_id=order_id,
            amount_cents=amount_cents,
            entry_type=LedgerEntryType.PAYOUT_DEDUCTION,
            description=description,
            paid=paid,
            created_at=now,
            paid_at=now if paid else None,
        )

    async def _require_vendor(self, uow: AbstractUnitOfWork, vendor_id: str):
        vendor = await uow.vendors.get_by_id(vendor_id)
        if vendor is None:
            raise VendorNotFoundError(vendor_id)
        return vendor
