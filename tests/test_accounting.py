from __future__ import annotations

import pytest

from town_economy.market.accounting import (
    AGENT_BANKROLL,
    LedgerContext,
    append_ledger,
    credit_pool_budgets,
    debit_pool_budget,
    normalize_bps,
    normalize_split_bps,
    split_arena_fee_to_budgets,
    split_build_contribution,
    split_claim_contribution,
)
from town_economy.records import LedgerType
from town_economy.store import EconomyStore


def _store_with_pool() -> tuple[EconomyStore, int]:
    store = EconomyStore(":memory:")
    with store.transaction() as tx:
        pool = tx.create_pool(reserve_balance=10_000, arena_balance=10_000, fee_bps=100)
    return store, pool.id


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(-10, 0), (0, 0), (2_500, 2_500), (20_000, 10_000), ("700", 700), ("abc", 0), (None, 0)],
)
def test_normalize_bps_clamps(raw, expected) -> None:
    assert normalize_bps(raw) == expected


def test_normalize_split_rescales_to_full_basis() -> None:
    split = normalize_split_bps(1, 1, 1, 1)
    assert sum(split.as_tuple()) == 10_000
    assert split.as_tuple() == (2_500, 2_500, 2_500, 2_500)

    uneven = normalize_split_bps(3_000, 3_000, 3_000, 3_000)
    assert sum(uneven.as_tuple()) == 10_000


def test_all_zero_split_uses_default() -> None:
    assert normalize_split_bps(0, 0, 0, 0).as_tuple() == (5_000, 2_500, 1_500, 1_000)
    assert normalize_split_bps(-1, "x", None, 0).as_tuple() == (5_000, 2_500, 1_500, 1_000)


def test_contribution_split_gives_remainder_to_insurance() -> None:
    split = normalize_split_bps(5_000, 2_500, 1_500, 1_000)
    claim = split_claim_contribution(33, split)
    assert (claim.town_invested, claim.ops_budget, claim.pvp_budget) == (16, 8, 4)
    assert claim.insurance_budget == 33 - (16 + 8 + 4)
    assert claim.total == 33

    build = split_build_contribution(40, split)
    assert build.budgets() == {"ops_budget": 10, "pvp_budget": 6, "insurance_budget": 4}
    assert build.town_invested == 20


def test_arena_fee_split_conserves_fee() -> None:
    for fee in (0, 1, 5, 99, 12_345):
        split = split_arena_fee_to_budgets(fee, 7_000)
        assert split.insurance_budget + split.ops_budget == fee
    assert split_arena_fee_to_budgets(10, 7_000).insurance_budget == 7


def test_append_ledger_drops_non_positive_rows_and_serializes_metadata() -> None:
    store, pool_id = _store_with_pool()
    with store.transaction() as tx:
        written = append_ledger(
            tx,
            [
                {"pool_id": pool_id, "source": "A", "destination": "B", "amount": 0, "type": LedgerType.BUDGET_PAYOUT},
                {"pool_id": pool_id, "source": "A", "destination": "B", "amount": -3, "type": LedgerType.BUDGET_PAYOUT},
                {
                    "pool_id": pool_id,
                    "source": "A",
                    "destination": "B",
                    "amount": 7.9,
                    "type": LedgerType.BUDGET_PAYOUT,
                    "tick": 4,
                    "metadata": {"note": "kept"},
                },
            ],
        )
    assert written == 1
    with store.session() as session:
        rows = session.list_ledger(limit=10)
    assert len(rows) == 1
    assert rows[0].amount == 7
    assert rows[0].tick == 4
    assert rows[0].metadata == {"note": "kept"}


def test_credit_pool_budgets_increments_buckets_and_logs_each() -> None:
    store, pool_id = _store_with_pool()
    ctx = LedgerContext(LedgerType.CLAIM_CONTRIBUTION, agent_id="a1", town_id="t1", tick=2, source=AGENT_BANKROLL)
    with store.transaction() as tx:
        credited = credit_pool_budgets(tx, pool_id, {"ops_budget": 5, "pvp_budget": 0, "insurance_budget": 2}, ctx)
    assert credited == {"ops_budget": 5, "insurance_budget": 2}

    with store.session() as session:
        pool = session.get_pool(pool_id)
        rows = session.list_ledger(limit=10)
    assert pool is not None
    assert (pool.ops_budget, pool.pvp_budget, pool.insurance_budget) == (5, 0, 2)
    assert sorted(row.destination for row in rows) == ["POOL_INSURANCE_BUDGET", "POOL_OPS_BUDGET"]
    assert all(row.source == AGENT_BANKROLL and row.town_id == "t1" for row in rows)


def test_credit_pool_budgets_rejects_unknown_bucket() -> None:
    store, pool_id = _store_with_pool()
    with pytest.raises(KeyError):
        with store.transaction() as tx:
            credit_pool_budgets(tx, pool_id, {"treasury": 5}, LedgerContext(LedgerType.BUDGET_PAYOUT))


def test_debit_pool_budget_full_partial_and_minimum() -> None:
    store, pool_id = _store_with_pool()
    ctx = LedgerContext(LedgerType.BUDGET_PAYOUT, agent_id="a1")
    with store.transaction() as tx:
        credit_pool_budgets(tx, pool_id, {"ops_budget": 10}, LedgerContext(LedgerType.CLAIM_CONTRIBUTION))

    with store.transaction() as tx:
        assert debit_pool_budget(tx, pool_id, "ops_budget", 25, ctx) == 0
        assert debit_pool_budget(tx, pool_id, "ops_budget", 25, ctx, allow_partial=True, minimum_payout=11) == 0
        assert debit_pool_budget(tx, pool_id, "ops_budget", 4, ctx) == 4
        assert debit_pool_budget(tx, pool_id, "ops_budget", 25, ctx, allow_partial=True) == 6
        assert debit_pool_budget(tx, pool_id, "ops_budget", 1, ctx) == 0

    with store.session() as session:
        pool = session.get_pool(pool_id)
        payouts = [row for row in session.list_ledger(limit=10) if row.type is LedgerType.BUDGET_PAYOUT]
    assert pool is not None and pool.ops_budget == 0
    assert sorted(row.amount for row in payouts) == [4, 6]
    assert all(row.destination == AGENT_BANKROLL for row in payouts)


def test_ledger_rows_roll_back_with_the_transaction() -> None:
    store, pool_id = _store_with_pool()
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            credit_pool_budgets(tx, pool_id, {"ops_budget": 5}, LedgerContext(LedgerType.CLAIM_CONTRIBUTION))
            raise RuntimeError("boom")
    with store.session() as session:
        pool = session.get_pool(pool_id)
        assert session.list_ledger(limit=10) == []
    assert pool is not None and pool.ops_budget == 0

