from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import TypeVar

from clear_terms.core.logging import get_logger, log_event, monotonic_ms
from clear_terms.ledger.locking import LeaseLock
from clear_terms.ledger.schemas import (
    AccountRecord,
    LedgerOutcome,
    LedgerStatus,
    PurchaseDescriptor,
    PurchaseRecord,
)
from clear_terms.ledger.store import LedgerStore

logger = get_logger(__name__)

T = TypeVar("T")

# Amount paid (payment currency unit) -> credits granted.
PRICE_TABLE: dict[Decimal, int] = {
    Decimal("2"): 20,
    Decimal("5"): 100,
    Decimal("20"): 1000,
}


def support_key_for(owner: str) -> str:
    """Short code users can quote to support, e.g. ``CT-8F2A-119B``."""
    parts = [p for p in owner.split("-") if p]
    if len(parts) >= 2:
        first, second = parts[0][:4], parts[1][:4]
    else:
        digest = hashlib.sha256(owner.encode("utf-8")).hexdigest()
        first, second = digest[:4], digest[4:8]
    return f"CT-{first.upper()}-{second.upper()}"


def credits_for_amount(amount: Decimal, price_table: Mapping[Decimal, int] = PRICE_TABLE) -> int:
    return price_table.get(Decimal(amount).normalize(), 0)


class LedgerService:
    def __init__(
        self,
        store: LedgerStore,
        lock: LeaseLock,
        *,
        initial_credits: int = 20,
        price_table: Mapping[Decimal, int] | None = None,
    ) -> None:
        self._store = store
        self._lock = lock
        self.initial_credits = initial_credits
        table = PRICE_TABLE if price_table is None else price_table
        self._price_table = {Decimal(k).normalize(): v for k, v in table.items()}

    def _mutate(
        self, operation: str, fn: Callable[[dict[str, AccountRecord]], tuple[T, bool]]
    ) -> T:
        start = time.monotonic()
        with self._lock.hold():
            records = self._store.read_all()
            result, changed = fn(records)
            if changed:
                self._store.write_all(records)
        log_event(
            logger,
            f"ledger.{operation}.committed" if changed else f"ledger.{operation}.read",
            duration_ms=monotonic_ms(start),
            level=logging.DEBUG,
        )
        return result

    def get_account(self, owner: str) -> AccountRecord | None:
        _require_owner(owner)
        return self._mutate("get", lambda records: (records.get(owner), False))

    def get_or_create(self, owner: str) -> AccountRecord:
        _require_owner(owner)

        def op(records: dict[str, AccountRecord]) -> tuple[AccountRecord, bool]:
            existing = records.get(owner)
            if existing is not None:
                return existing, False
            record = AccountRecord(
                owner=owner,
                support_key=support_key_for(owner),
                balance=self.initial_credits,
            )
            records[owner] = record
            return record, True

        return self._mutate("create", op)

    def debit(self, owner: str) -> LedgerOutcome:
        _require_owner(owner)

        def op(records: dict[str, AccountRecord]) -> tuple[LedgerOutcome, bool]:
            record = records.get(owner)
            if record is None:
                return LedgerOutcome(LedgerStatus.NOT_FOUND), False
            if record.balance <= 0:
                return LedgerOutcome(LedgerStatus.QUOTA_EXCEEDED, balance=record.balance), False
            record.balance -= 1
            record.usage_count += 1
            record.last_used_at = datetime.now(UTC)
            return LedgerOutcome(LedgerStatus.OK, balance=record.balance), True

        outcome = self._mutate("debit", op)
        log_event(
            logger,
            "ledger.debit.success" if outcome.ok else "ledger.debit.refused",
            owner=owner,
            status=outcome.status.value,
            balance=outcome.balance,
        )
        return outcome

    def credit(self, owner: str, amount: int) -> LedgerOutcome:
        _require_owner(owner)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValueError("amount must be a positive integer")

        def op(records: dict[str, AccountRecord]) -> tuple[LedgerOutcome, bool]:
            record = records.get(owner)
            if record is None:
                return LedgerOutcome(LedgerStatus.NOT_FOUND), False
            record.balance += amount
            record.last_used_at = datetime.now(UTC)
            return LedgerOutcome(LedgerStatus.OK, balance=record.balance), True

        outcome = self._mutate("credit", op)
        log_event(
            logger,
            "ledger.credit.success" if outcome.ok else "ledger.credit.refused",
            owner=owner,
            amount=amount,
            status=outcome.status.value,
            balance=outcome.balance,
        )
        return outcome

    def record_purchase(self, owner: str, purchase: PurchaseDescriptor) -> LedgerOutcome:
        """
        Append a purchase to the owner's history and grant its credits.

        Only completed purchases grant credits. An amount missing from the price
        table grants nothing but is still recorded, so the payment remains traceable.
        """
        _require_owner(owner)
        granted = 0
        if purchase.status == "completed":
            granted = credits_for_amount(purchase.amount, self._price_table)
            if granted == 0:
                log_event(
                    logger,
                    "ledger.purchase.unmapped_amount",
                    level=logging.WARNING,
                    owner=owner,
                    amount=str(purchase.amount),
                    payment_reference=purchase.payment_reference,
                )

        def op(records: dict[str, AccountRecord]) -> tuple[LedgerOutcome, bool]:
            record = records.get(owner)
            if record is None:
                return LedgerOutcome(LedgerStatus.NOT_FOUND), False
            before = record.balance
            record.balance = before + granted
            record.purchase_history.append(
                PurchaseRecord(
                    amount=purchase.amount,
                    credits_granted=granted,
                    balance_before=before,
                    balance_after=record.balance,
                    payment_reference=purchase.payment_reference,
                    status=purchase.status,
                )
            )
            return (
                LedgerOutcome(LedgerStatus.OK, balance=record.balance, credits_granted=granted),
                True,
            )

        outcome = self._mutate("purchase", op)
        log_event(
            logger,
            "ledger.purchase.recorded" if outcome.ok else "ledger.purchase.refused",
            owner=owner,
            amount=str(purchase.amount),
            purchase_status=purchase.status,
            credits_granted=outcome.credits_granted,
            balance=outcome.balance,
        )
        return outcome

    def purchase_history(self, owner: str) -> list[PurchaseRecord]:
        record = self.get_account(owner)
        if record is None:
            return []
        return list(record.purchase_history)

    def stats(self) -> dict[str, int]:
        records = self._mutate("stats", lambda records: (list(records.values()), False))
        return {
            "total_users": len(records),
            "total_usage": sum(r.usage_count for r in records),
            "total_balance": sum(r.balance for r in records),
        }


def _require_owner(owner: str) -> None:
    if not owner or not isinstance(owner, str):
        raise ValueError("owner is required")
