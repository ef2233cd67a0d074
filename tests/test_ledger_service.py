from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from clear_terms.ledger.schemas import LedgerStatus, PurchaseDescriptor
from clear_terms.ledger.service import credits_for_amount, support_key_for

OWNER = "8f2a91c0-119b-4c8e-9d7f-0a1b2c3d4e5f"


def test_get_or_create_seeds_initial_balance_once(ledger):
    record = ledger.get_or_create(OWNER)
    assert record.balance == 20
    assert record.usage_count == 0
    assert record.support_key == "CT-8F2A-119B"

    ledger.debit(OWNER)
    again = ledger.get_or_create(OWNER)
    assert again.balance == 19


def test_debit_decrements_balance_and_counts_usage(ledger):
    ledger.get_or_create(OWNER)
    outcome = ledger.debit(OWNER)

    assert outcome.ok
    assert outcome.balance == 19
    record = ledger.get_account(OWNER)
    assert record.balance == 19
    assert record.usage_count == 1


def test_debit_unknown_owner_is_not_found(ledger):
    outcome = ledger.debit("nobody")
    assert outcome.status == LedgerStatus.NOT_FOUND
    assert ledger.get_account("nobody") is None


def test_debit_at_zero_balance_is_refused_and_balance_unchanged(ledger):
    ledger.get_or_create(OWNER)
    for _ in range(20):
        assert ledger.debit(OWNER).ok

    outcome = ledger.debit(OWNER)

    assert outcome.status == LedgerStatus.QUOTA_EXCEEDED
    record = ledger.get_account(OWNER)
    assert record.balance == 0
    assert record.usage_count == 20


def test_credit_adds_to_balance(ledger):
    ledger.get_or_create(OWNER)
    outcome = ledger.credit(OWNER, 5)
    assert outcome.ok
    assert outcome.balance == 25
    assert ledger.credit("nobody", 1).status == LedgerStatus.NOT_FOUND


@pytest.mark.parametrize("amount", [0, -1, True])
def test_credit_rejects_non_positive_amounts(ledger, amount):
    ledger.get_or_create(OWNER)
    with pytest.raises(ValueError):
        ledger.credit(OWNER, amount)


def test_owner_is_required(ledger):
    with pytest.raises(ValueError):
        ledger.get_or_create("")


def test_record_purchase_grants_credits_from_price_table(ledger):
    ledger.get_or_create(OWNER)

    outcome = ledger.record_purchase(
        OWNER, PurchaseDescriptor(amount=Decimal("5"), payment_reference="pi_123")
    )

    assert outcome.ok
    assert outcome.credits_granted == 100
    assert outcome.balance == 120
    [purchase] = ledger.purchase_history(OWNER)
    assert purchase.amount == Decimal("5")
    assert purchase.credits_granted == 100
    assert purchase.balance_before == 20
    assert purchase.balance_after == 120
    assert purchase.payment_reference == "pi_123"
    assert purchase.status == "completed"


def test_record_purchase_unmapped_amount_only_appends_history(ledger):
    ledger.get_or_create(OWNER)

    outcome = ledger.record_purchase(OWNER, PurchaseDescriptor(amount=Decimal("3.50")))

    assert outcome.ok
    assert outcome.credits_granted == 0
    assert ledger.get_account(OWNER).balance == 20
    [purchase] = ledger.purchase_history(OWNER)
    assert purchase.credits_granted == 0
    assert purchase.balance_before == purchase.balance_after == 20


def test_failed_purchase_is_recorded_without_credits(ledger):
    ledger.get_or_create(OWNER)
    outcome = ledger.record_purchase(
        OWNER, PurchaseDescriptor(amount=Decimal("20"), status="failed")
    )
    assert outcome.credits_granted == 0
    assert ledger.get_account(OWNER).balance == 20
    assert ledger.purchase_history(OWNER)[0].status == "failed"


def test_record_purchase_unknown_owner(ledger):
    outcome = ledger.record_purchase("nobody", PurchaseDescriptor(amount=Decimal("2")))
    assert outcome.status == LedgerStatus.NOT_FOUND


def test_purchase_history_is_append_only_and_ordered(ledger):
    ledger.get_or_create(OWNER)
    ledger.record_purchase(OWNER, PurchaseDescriptor(amount=Decimal("2")))
    ledger.record_purchase(OWNER, PurchaseDescriptor(amount=Decimal("20")))

    history = ledger.purchase_history(OWNER)
    assert [p.credits_granted for p in history] == [20, 1000]
    assert ledger.get_account(OWNER).balance == 1040


def test_credits_for_amount_is_deterministic():
    assert credits_for_amount(Decimal("2")) == 20
    assert credits_for_amount(Decimal("2.00")) == 20
    assert credits_for_amount(Decimal("5")) == 100
    assert credits_for_amount(Decimal("20.0")) == 1000
    assert credits_for_amount(Decimal("7")) == 0


def test_support_key_falls_back_to_digest_for_undashed_ids():
    key = support_key_for("plainowner")
    assert key.startswith("CT-")
    assert len(key) == len("CT-XXXX-YYYY")
    assert support_key_for("plainowner") == key


def test_concurrent_debits_do_not_lose_updates(ledger):
    ledger.get_or_create(OWNER)
    ledger.credit(OWNER, 30)  # balance 50
    errors: list[Exception] = []

    def worker():
        try:
            for _ in range(5):
                ledger.debit(OWNER)
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    record = ledger.get_account(OWNER)
    assert record.balance == 10
    assert record.usage_count == 40


def test_concurrent_debits_never_go_negative(ledger):
    ledger.get_or_create(OWNER)  # balance 20
    outcomes = []
    lock = threading.Lock()

    def worker():
        for _ in range(5):
            outcome = ledger.debit(OWNER)
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for o in outcomes if o.ok) == 20
    assert sum(1 for o in outcomes if o.status == LedgerStatus.QUOTA_EXCEEDED) == 10
    assert ledger.get_account(OWNER).balance == 0


def test_stats_totals(ledger):
    ledger.get_or_create("a-1")
    ledger.get_or_create("b-2")
    ledger.debit("a-1")
    assert ledger.stats() == {"total_users": 2, "total_usage": 1, "total_balance": 39}
