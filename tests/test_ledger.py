import asyncio

import pytest
from sqlalchemy import func, select, update

from chy_economy.app.errors import (
    AccountNotFound,
    IdempotencyConflict,
    InsufficientBalance,
)
from chy_economy.app.security import SecurityContext
from chy_economy.models import AuditSeverity, ChyTransaction, TransactionKind, User


async def _entry_count(session_factory, user_id: str) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(ChyTransaction).where(ChyTransaction.user_id == user_id)
        )


async def test_open_account_starts_at_zero_and_is_idempotent(ledger):
    await ledger.open_account("player-1", webapp_user_id="web-1", display_name="Roachy")
    await ledger.open_account("player-1")

    assert await ledger.get_balance("player-1") == 0


async def test_credit_and_debit_record_balance_chain(ledger, fund, context, session_factory):
    await fund("player-1", 100)

    result = await ledger.execute_transaction(
        TransactionKind.ENTRY_FEE, -40, "comp-1:2025-03-14", "flappy_daily", context
    )

    assert result.new_balance == 60
    assert not result.is_duplicate
    assert await ledger.get_balance("player-1") == 60

    history = await ledger.transaction_history("player-1")
    assert len(history) == 2
    fee = next(entry for entry in history if entry.tx_kind == TransactionKind.ENTRY_FEE)
    assert (fee.balance_before, fee.amount, fee.balance_after) == (100, -40, 60)
    assert fee.client_ip == "10.0.0.7"
    assert fee.user_agent == "flappy-ios/2.3"
    assert fee.idempotency_key == result.idempotency_key


async def test_explicit_key_applies_exactly_once(ledger, fund, context, session_factory, audit_events):
    await fund("player-1", 100)

    first = await ledger.execute_transaction(
        TransactionKind.REFUND, 25, "comp-1", "flappy_daily", context, idempotency_key="refund-comp-1-abc"
    )
    second = await ledger.execute_transaction(
        TransactionKind.REFUND, 25, "comp-1", "flappy_daily", context, idempotency_key="refund-comp-1-abc"
    )

    assert second.is_duplicate
    assert second.transaction_id == first.transaction_id
    assert second.new_balance == first.new_balance == 125
    assert await ledger.get_balance("player-1") == 125
    assert await _entry_count(session_factory, "player-1") == 2

    duplicates = await audit_events("duplicate_transaction")
    assert len(duplicates) == 1
    assert duplicates[0].severity == AuditSeverity.INFO


async def test_derived_key_collapses_within_the_same_utc_day(ledger, fund, context, clock):
    await fund("player-1", 100)

    first = await ledger.execute_transaction(
        TransactionKind.ENTRY_FEE, -10, "comp-1:2025-03-14", "flappy_daily", context
    )
    clock.advance(3600)
    retry = await ledger.execute_transaction(
        TransactionKind.ENTRY_FEE, -10, "comp-1:2025-03-14", "flappy_daily", context
    )
    assert retry.is_duplicate
    assert retry.idempotency_key == first.idempotency_key

    clock.advance(24 * 3600)
    next_day = await ledger.execute_transaction(
        TransactionKind.ENTRY_FEE, -10, "comp-1:2025-03-14", "flappy_daily", context
    )
    assert not next_day.is_duplicate
    assert await ledger.get_balance("player-1") == 80


async def test_insufficient_balance_leaves_no_trace(ledger, fund, context, session_factory, audit_events):
    await fund("player-1", 50)

    with pytest.raises(InsufficientBalance) as excinfo:
        await ledger.execute_transaction(
            TransactionKind.ENTRY_FEE, -100, "comp-1:2025-03-14", "flappy_daily", context
        )

    assert excinfo.value.current_balance == 50
    assert excinfo.value.http_status == 402
    assert await ledger.get_balance("player-1") == 50
    assert await _entry_count(session_factory, "player-1") == 1

    failures = await audit_events("transaction_failed")
    assert [event.severity for event in failures] == [AuditSeverity.WARNING]


async def test_debit_to_exactly_zero_is_allowed(ledger, fund, context):
    await fund("player-1", 30)

    result = await ledger.execute_transaction(
        TransactionKind.ENTRY_FEE, -30, "comp-1:2025-03-14", "flappy_daily", context
    )

    assert result.new_balance == 0


async def test_unknown_account_is_rejected(ledger):
    with pytest.raises(AccountNotFound):
        await ledger.execute_transaction(
            TransactionKind.DAILY_BONUS, 10, "2025-03-14", "daily_bonus", SecurityContext(user_id="ghost")
        )
    with pytest.raises(AccountNotFound):
        await ledger.get_balance("ghost")


async def test_non_integer_amount_is_rejected(ledger, fund, context):
    await fund("player-1", 10)

    with pytest.raises(TypeError):
        await ledger.execute_transaction(TransactionKind.DAILY_BONUS, 1.5, "x", "y", context)


async def test_key_owned_by_other_user_is_a_conflict(ledger, fund, audit_events):
    await fund("player-1", 100)
    await fund("player-2", 100)

    await ledger.execute_transaction(
        TransactionKind.REFUND, 5, "comp-1", "flappy_daily",
        SecurityContext(user_id="player-1"), idempotency_key="shared-key-0001",
    )

    with pytest.raises(IdempotencyConflict):
        await ledger.execute_transaction(
            TransactionKind.REFUND, 5, "comp-1", "flappy_daily",
            SecurityContext(user_id="player-2"), idempotency_key="shared-key-0001",
        )

    assert await ledger.get_balance("player-2") == 100
    conflicts = await audit_events("idempotency_key_conflict")
    assert conflicts[0].severity == AuditSeverity.CRITICAL


async def test_concurrent_debits_never_overdraw(ledger, fund):
    await fund("player-1", 100)
    context = SecurityContext(user_id="player-1")

    results = await asyncio.gather(
        *[
            ledger.execute_transaction(
                TransactionKind.ENTRY_FEE, -30, f"comp-{i}:2025-03-14", "flappy_daily", context
            )
            for i in range(5)
        ],
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientBalance)]
    assert len(succeeded) == 3
    assert len(rejected) == 2
    assert await ledger.get_balance("player-1") == 10

    report = await ledger.reconcile("player-1")
    assert report.is_consistent


async def test_concurrent_same_key_applies_once(ledger, fund, session_factory):
    await fund("player-1", 0)
    context = SecurityContext(user_id="player-1")

    results = await asyncio.gather(
        *[
            ledger.execute_transaction(
                TransactionKind.DAILY_BONUS, 10, "2025-03-14", "daily_bonus", context
            )
            for _ in range(4)
        ]
    )

    assert sum(1 for r in results if not r.is_duplicate) == 1
    assert len({r.transaction_id for r in results}) == 1
    assert await ledger.get_balance("player-1") == 10
    assert await _entry_count(session_factory, "player-1") == 1


async def test_reconcile_matches_sum_of_entries(ledger, fund, context):
    await fund("player-1", 100)
    await ledger.execute_transaction(TransactionKind.ENTRY_FEE, -20, "c:1", "flappy_daily", context)
    await ledger.execute_transaction(TransactionKind.PRIZE_PAYOUT, 75, "c:1", "competition_prize", context)

    report = await ledger.reconcile("player-1")

    assert report.is_consistent
    assert report.stored_balance == report.calculated_balance == 155
    assert report.drift == 0


async def test_reconcile_reports_drift_without_fixing_it(ledger, fund, session_factory, audit_events):
    await fund("player-1", 100)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(User).where(User.id == "player-1").values(chy_balance=130))

    report = await ledger.reconcile("player-1")

    assert not report.is_consistent
    assert report.drift == 30
    assert await ledger.get_balance("player-1") == 130
    events = await audit_events("balance_inconsistency")
    assert len(events) == 1
    assert events[0].severity == AuditSeverity.CRITICAL


async def test_ledger_entries_cannot_be_modified(ledger, fund, session_factory):
    await fund("player-1", 100)

    async with session_factory() as session:
        entry = await session.scalar(select(ChyTransaction).where(ChyTransaction.user_id == "player-1"))
        entry.amount = 1_000_000
        with pytest.raises(ValueError):
            await session.commit()

    assert (await ledger.reconcile("player-1")).calculated_balance == 100


async def test_find_by_reference_returns_latest_entry(ledger, fund, context):
    await fund("player-1", 100)
    await ledger.execute_transaction(TransactionKind.ENTRY_FEE, -15, "comp-9:2025-03-14", "flappy_daily", context)

    entry = await ledger.find_by_reference("player-1", TransactionKind.ENTRY_FEE, "comp-9:2025-03-14")
    missing = await ledger.find_by_reference("player-1", TransactionKind.ENTRY_FEE, "comp-0:2025-03-14")

    assert entry.amount == -15
    assert missing is None


async def test_two_debits_that_jointly_overdraw_leave_one_winner(ledger, fund):
    await fund("player-1", 100)
    context = SecurityContext(user_id="player-1")

    results = await asyncio.gather(
        ledger.execute_transaction(TransactionKind.ENTRY_FEE, -70, "comp-a:2025-03-14", "flappy_daily", context),
        ledger.execute_transaction(TransactionKind.ENTRY_FEE, -70, "comp-b:2025-03-14", "flappy_daily", context),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, InsufficientBalance)]
    assert len(winners) == 1 and len(losers) == 1
    assert winners[0].new_balance == 30
    assert await ledger.get_balance("player-1") == 30


async def test_count_by_reference_counts_only_matching_entries(ledger, fund, context):
    await fund("player-1", 100)
    await ledger.execute_transaction(TransactionKind.ENTRY_FEE, -10, "comp-1:2025-03-14", "flappy_daily", context)
    await ledger.execute_transaction(TransactionKind.REFUND, 10, "comp-1:2025-03-14", "flappy_daily", context)
    await ledger.execute_transaction(TransactionKind.ENTRY_FEE, -10, "comp-2:2025-03-14", "flappy_daily", context)

    assert await ledger.count_by_reference("player-1", TransactionKind.ENTRY_FEE, "comp-1:2025-03-14") == 1
    assert await ledger.count_by_reference("player-1", TransactionKind.REFUND, "comp-1:2025-03-14") == 1
    assert await ledger.count_by_reference("player-2", TransactionKind.ENTRY_FEE, "comp-1:2025-03-14") == 0


async def test_existing_account_adopts_a_webapp_link(ledger, fund, context):
    await fund("player-1", 100)
    assert await ledger.linked_webapp_user("player-1") is None

    await ledger.open_account("player-1", webapp_user_id="web-7")
    await ledger.open_account("player-1", webapp_user_id="web-other")
    await ledger.execute_transaction(TransactionKind.ENTRY_FEE, -10, "comp-1:2025-03-14", "flappy_daily", context)

    assert await ledger.linked_webapp_user("player-1") == "web-7"
    assert (await ledger.transaction_history("player-1"))[0].webapp_user_id == "web-7"
    with pytest.raises(AccountNotFound):
        await ledger.linked_webapp_user("ghost")
