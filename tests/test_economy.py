import pytest
from sqlalchemy import func, select

from chy_economy.app.errors import EntryNotFound, InsufficientBalance, LedgerBusy, RateLimited
from chy_economy.app.idempotency import derive_payout_key
from chy_economy.models import AuditSeverity, GameSessionToken, TransactionKind


async def test_entering_charges_fee_and_issues_bound_session(economy, fund, context, sessions, clock):
    await fund("player-1", 100)

    receipt = await economy.enter_competition(context, "comp-1", "flappy", 25, "daily", "2025-03-14")

    assert receipt.transaction.new_balance == 75
    clock.advance(30)
    record = await sessions.validate_and_consume(receipt.session.token, "player-1", 100)
    assert record.is_ranked
    assert record.competition_id == "comp-1"


async def test_entry_retry_does_not_charge_twice(economy, fund, context, ledger):
    await fund("player-1", 100)

    first = await economy.enter_competition(context, "comp-1", "flappy", 25, "daily", "2025-03-14")
    retry = await economy.enter_competition(context, "comp-1", "flappy", 25, "daily", "2025-03-14")

    assert retry.transaction.is_duplicate
    assert retry.session.token != first.session.token
    assert await ledger.get_balance("player-1") == 75


async def test_entry_without_funds_issues_no_session(economy, fund, context, session_factory):
    await fund("player-1", 10)

    with pytest.raises(InsufficientBalance):
        await economy.enter_competition(context, "comp-1", "flappy", 25, "daily", "2025-03-14")

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(GameSessionToken)) == 0


async def test_entry_is_rate_limited(economy, fund, context):
    await fund("player-1", 1000)

    for i in range(5):
        await economy.enter_competition(context, f"comp-{i}", "flappy", 1, "daily", "2025-03-14")

    with pytest.raises(RateLimited):
        await economy.enter_competition(context, "comp-9", "flappy", 1, "daily", "2025-03-14")


async def test_entry_fee_must_be_positive(economy, context):
    with pytest.raises(ValueError):
        await economy.enter_competition(context, "comp-1", "flappy", 0, "daily", "2025-03-14")


async def test_daily_bonus_is_credited_once_per_utc_day(economy, fund, context, ledger, clock):
    await fund("player-1", 0)

    first = await economy.claim_daily_bonus(context)
    again = await economy.claim_daily_bonus(context)
    assert not first.is_duplicate
    assert again.is_duplicate
    assert await ledger.get_balance("player-1") == 10

    clock.advance(24 * 3600)
    tomorrow = await economy.claim_daily_bonus(context)
    assert not tomorrow.is_duplicate
    assert await ledger.get_balance("player-1") == 20


async def test_refund_returns_the_paid_fee_once(economy, fund, context, ledger):
    await fund("player-1", 100)
    await economy.enter_competition(context, "comp-1", "flappy", 40, "daily", "2025-03-14")

    refund = await economy.refund_entry(context, "comp-1", "2025-03-14")
    again = await economy.refund_entry(context, "comp-1", "2025-03-14")

    assert refund.new_balance == 100
    assert again.is_duplicate
    assert await ledger.get_balance("player-1") == 100


async def test_reentry_after_refund_charges_a_new_fee(economy, fund, context, ledger, sessions, clock):
    await fund("player-1", 100)
    first = await economy.enter_competition(context, "comp-1", "flappy", 10, "daily", "2025-03-14")
    await economy.refund_entry(context, "comp-1", "2025-03-14")

    second = await economy.enter_competition(context, "comp-1", "flappy", 10, "daily", "2025-03-14")

    assert not second.transaction.is_duplicate
    assert second.transaction.idempotency_key != first.transaction.idempotency_key
    assert second.transaction.new_balance == 90
    assert await ledger.get_balance("player-1") == 90
    clock.advance(30)
    record = await sessions.validate_and_consume(second.session.token, "player-1", 50)
    assert record.is_ranked


async def test_each_reentry_can_be_refunded_once(economy, fund, context, ledger):
    await fund("player-1", 100)
    await economy.enter_competition(context, "comp-1", "flappy", 10, "daily", "2025-03-14")
    await economy.refund_entry(context, "comp-1", "2025-03-14")
    await economy.enter_competition(context, "comp-1", "flappy", 10, "daily", "2025-03-14")

    refund = await economy.refund_entry(context, "comp-1", "2025-03-14")
    again = await economy.refund_entry(context, "comp-1", "2025-03-14")

    assert not refund.is_duplicate
    assert again.is_duplicate
    assert again.transaction_id == refund.transaction_id
    assert await ledger.get_balance("player-1") == 100
    assert (await ledger.reconcile("player-1")).is_consistent


async def test_entry_refunded_midway_issues_no_session(economy, fund, context, ledger, session_factory, monkeypatch):
    await fund("player-1", 100)
    counts = iter([0, 1])

    async def racing_count(user_id, kind, reference_id):
        return next(counts)

    monkeypatch.setattr(ledger, "count_by_reference", racing_count)

    with pytest.raises(LedgerBusy):
        await economy.enter_competition(context, "comp-1", "flappy", 10, "daily", "2025-03-14")

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(GameSessionToken)) == 0


async def test_refund_without_entry_is_rejected(economy, fund, context):
    await fund("player-1", 100)

    with pytest.raises(EntryNotFound):
        await economy.refund_entry(context, "comp-1", "2025-03-14")


async def test_settlement_pays_each_rank_once(economy, fund, ledger):
    for user in ("alice", "bob", "carol"):
        await fund(user, 0)

    report = await economy.settle_competition("comp-1", 1000, ["alice", "bob", "carol"])
    rerun = await economy.settle_competition("comp-1", 1000, ["alice", "bob", "carol"])

    assert report.is_complete
    assert report.total_paid == 500
    assert report.payouts[1].idempotency_key == derive_payout_key("comp-1", 1)
    assert all(result.is_duplicate for result in rerun.payouts.values())
    assert rerun.total_paid == 0
    assert [await ledger.get_balance(u) for u in ("alice", "bob", "carol")] == [250, 150, 100]

    history = await ledger.transaction_history("alice")
    assert history[0].tx_kind == TransactionKind.PRIZE_PAYOUT
    assert history[0].client_ip == "system"


async def test_settlement_continues_past_a_failed_rank(economy, fund, ledger, audit_events):
    await fund("alice", 0)
    await fund("carol", 0)

    report = await economy.settle_competition("comp-1", 1000, ["alice", "ghost", "carol"])

    assert report.failures == {2: "ACCOUNT_NOT_FOUND"}
    assert not report.is_complete
    assert await ledger.get_balance("carol") == 100
    settled = await audit_events("competition_settled")
    assert settled[0].severity == AuditSeverity.WARNING


async def test_admin_adjustment_names_the_admin(economy, fund, ledger, audit_events):
    await fund("player-1", 50)

    result = await economy.admin_adjust("player-1", -20, "chargeback reversal", "ops-7",
                                        idempotency_key="adj-0001-ops-7")

    assert result.new_balance == 30
    event = (await audit_events("admin_adjustment"))[0]
    assert "ops-7" in event.details
    assert "chargeback reversal" in event.details


async def test_distinct_admin_adjustments_on_the_same_day_both_apply(economy, fund, ledger):
    await fund("player-1", 0)

    first = await economy.admin_adjust("player-1", 50, "tournament make-good", "ops-7",
                                       idempotency_key="adj-0002-ops-7")
    second = await economy.admin_adjust("player-1", 50, "support goodwill credit", "ops-7",
                                        idempotency_key="adj-0003-ops-7")
    resent = await economy.admin_adjust("player-1", 50, "support goodwill credit", "ops-7",
                                        idempotency_key="adj-0003-ops-7")

    assert not first.is_duplicate
    assert not second.is_duplicate
    assert resent.is_duplicate
    assert await ledger.get_balance("player-1") == 100


async def test_admin_adjustment_requires_a_key(economy, fund, ledger):
    await fund("player-1", 0)

    with pytest.raises(ValueError):
        await economy.admin_adjust("player-1", 50, "missing key", "ops-7", idempotency_key="")

    assert await ledger.get_balance("player-1") == 0
