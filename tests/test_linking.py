import pytest

from household_budget.errors import LinkError, ValidationError
from household_budget.linking import (
    apply_transaction_update,
    auto_match_transfers,
    clear_invalid_links,
    detach_partner,
    link_expense_and_coverage,
    link_savings,
    match_internal_transfer,
    previous_partners,
)


ACCOUNT_NAMES = {"acc-1": "Lönekonto", "acc-2": "Sparkonto"}


def make_tx(tx_id, amount, account_id="acc-1", date="2025-02-10", **overrides):
    tx = {
        "id": tx_id,
        "account_id": account_id,
        "date": date,
        "description": "Överföring",
        "amount": amount,
        "type": "Transaction",
        "status": "red",
        "main_category_id": None,
        "sub_category_id": None,
        "user_description": None,
        "linked_transaction_id": None,
        "corrected_amount": None,
        "savings_target_id": None,
        "is_manually_changed": False,
    }
    tx.update(overrides)
    return tx


def test_match_internal_transfer_links_both_sides():
    out = make_tx("out", -50000, "acc-1")
    incoming = make_tx("in", 50000, "acc-2")
    first, second = match_internal_transfer(out, incoming, ACCOUNT_NAMES)

    assert first["linked_transaction_id"] == "in"
    assert second["linked_transaction_id"] == "out"
    assert first["type"] == second["type"] == "InternalTransfer"
    assert first["user_description"] == "Transfer to Sparkonto, 2025-02-10"
    assert second["user_description"] == "Transfer from Lönekonto, 2025-02-10"
    assert first["is_manually_changed"] and second["is_manually_changed"]
    assert first["status"] == "yellow"
    assert out["linked_transaction_id"] is None


def test_match_internal_transfer_with_categories_is_green():
    out = make_tx("out", -50000, "acc-1", main_category_id="m", sub_category_id="s")
    first, _second = match_internal_transfer(out, make_tx("in", 50000, "acc-2"), ACCOUNT_NAMES)
    assert first["status"] == "green"


def test_match_internal_transfer_rejects_same_account_and_self():
    tx = make_tx("a", -100)
    with pytest.raises(LinkError):
        match_internal_transfer(tx, tx)
    with pytest.raises(LinkError):
        match_internal_transfer(tx, make_tx("b", 100, "acc-1"))


def test_unknown_account_name_in_description():
    first, _second = match_internal_transfer(make_tx("a", -100), make_tx("b", 100, "acc-9"), ACCOUNT_NAMES)
    assert first["user_description"] == "Transfer to Unknown account, 2025-02-10"


def test_partial_coverage():
    expense, coverage = link_expense_and_coverage(make_tx("e", -100000), make_tx("c", 40000))

    assert expense["type"] == "ExpenseClaim"
    assert expense["corrected_amount"] == -60000
    assert expense["amount"] == -100000
    assert coverage["type"] == "CostCoverage"
    assert coverage["corrected_amount"] == 0
    assert expense["linked_transaction_id"] == "c"
    assert coverage["linked_transaction_id"] == "e"


def test_coverage_larger_than_expense():
    expense, coverage = link_expense_and_coverage(make_tx("e", -30000), make_tx("c", 50000))
    assert expense["corrected_amount"] == 0
    assert coverage["corrected_amount"] == 20000


@pytest.mark.parametrize(
    "expense, coverage",
    [
        (make_tx("e", 100), make_tx("c", 100)),
        (make_tx("e", -100), make_tx("c", -100)),
        (make_tx("e", -100), make_tx("c", 0)),
        (make_tx("e", -100), make_tx("e", 100)),
    ],
)
def test_link_expense_rejects_invalid_pairs(expense, coverage):
    with pytest.raises(LinkError):
        link_expense_and_coverage(expense, coverage)


def test_link_savings():
    tx = link_savings(make_tx("s", -200000, main_category_id="old"), "goal-1", "main-savings")
    assert tx["type"] == "Savings"
    assert tx["savings_target_id"] == "goal-1"
    assert tx["main_category_id"] == "main-savings"
    assert tx["is_manually_changed"] is True

    kept = link_savings(make_tx("s", -200000, main_category_id="old"), "goal-1")
    assert kept["main_category_id"] == "old"

    with pytest.raises(LinkError):
        link_savings(make_tx("s", -1), "")


def test_auto_match_links_unique_counterpart():
    transactions = [
        make_tx("out", -50000, "acc-1", type="InternalTransfer"),
        make_tx("in", 50000, "acc-2"),
        make_tx("other-day", 50000, "acc-2", date="2025-02-11"),
    ]
    changed, pairs = auto_match_transfers(transactions, ["acc-1", "acc-2"], ACCOUNT_NAMES)

    assert pairs == [("out", "in")]
    by_id = {tx["id"]: tx for tx in changed}
    assert set(by_id) == {"out", "in"}
    assert by_id["in"]["type"] == "InternalTransfer"
    assert by_id["out"]["linked_transaction_id"] == "in"


def test_auto_match_skips_ambiguous_candidates():
    transactions = [
        make_tx("out", -50000, "acc-1", type="InternalTransfer"),
        make_tx("in-1", 50000, "acc-2"),
        make_tx("in-2", 50000, "acc-3"),
    ]
    changed, pairs = auto_match_transfers(transactions, ["acc-1", "acc-2", "acc-3"])
    assert pairs == []
    assert changed == []


def test_auto_match_ignores_unknown_accounts_and_linked_rows():
    transactions = [
        make_tx("out", -50000, "acc-1", type="InternalTransfer"),
        make_tx("in", 50000, "acc-9"),
        make_tx("linked", 50000, "acc-2", linked_transaction_id="claim"),
        make_tx("claim", -80000, "acc-2", linked_transaction_id="linked"),
    ]
    _changed, pairs = auto_match_transfers(transactions, ["acc-1", "acc-2"])
    assert pairs == []


def test_clear_invalid_links():
    transactions = [
        make_tx("a", -100, "acc-1", type="InternalTransfer", linked_transaction_id="gone", status="green"),
        make_tx("b", -100, "acc-1", type="InternalTransfer", linked_transaction_id="c"),
        make_tx("c", 100, "acc-2", type="InternalTransfer", linked_transaction_id="b"),
    ]
    changed = clear_invalid_links(transactions, {"acc-1", "acc-2"})
    assert [tx["id"] for tx in changed] == ["a"]
    assert changed[0]["type"] == "Transaction"
    assert changed[0]["linked_transaction_id"] is None


def test_clear_invalid_links_resets_claim_with_missing_coverage():
    claim, _coverage = link_expense_and_coverage(make_tx("exp", -10000), make_tx("cov", 4000))

    changed, pairs = auto_match_transfers([claim], ["acc-1"])

    assert pairs == []
    assert len(changed) == 1
    assert changed[0]["linked_transaction_id"] is None
    assert changed[0]["corrected_amount"] is None
    assert changed[0]["type"] == "Transaction"
    assert changed[0]["status"] == "red"


def test_clear_invalid_links_resets_both_sides_on_unknown_account():
    expense, coverage = link_expense_and_coverage(make_tx("exp", -10000, "acc-1"), make_tx("cov", 4000, "acc-9"))

    changed = clear_invalid_links([expense, coverage], {"acc-1"})

    by_id = {tx["id"]: tx for tx in changed}
    assert set(by_id) == {"exp", "cov"}
    for tx in by_id.values():
        assert tx["type"] == "Transaction"
        assert tx["linked_transaction_id"] is None
        assert tx["corrected_amount"] is None


def test_clear_invalid_links_keeps_valid_coverage_pair():
    expense, coverage = link_expense_and_coverage(make_tx("exp", -10000), make_tx("cov", 4000))
    assert clear_invalid_links([expense, coverage], {"acc-1"}) == []


def test_previous_partners_detaches_old_coverage():
    expense, old_coverage = link_expense_and_coverage(make_tx("exp", -10000), make_tx("old", 4000))
    new_coverage = make_tx("new", 3000)
    stored = {"old": old_coverage}

    detached = previous_partners([expense, new_coverage], stored.get)

    assert [tx["id"] for tx in detached] == ["old"]
    assert detached[0]["type"] == "CostCoverage"
    assert detached[0]["linked_transaction_id"] is None
    assert detached[0]["corrected_amount"] is None


def test_previous_partners_ignores_links_inside_pair_and_one_way_links():
    out, incoming = match_internal_transfer(make_tx("out", -500), make_tx("in", 500, "acc-2"))
    assert previous_partners([out, incoming], {}.get) == []

    pointing = make_tx("x", 100, linked_transaction_id="y")
    stored = {"y": make_tx("y", -100, linked_transaction_id="z")}
    assert previous_partners([pointing, make_tx("other", 5)], stored.get) == []


def test_detach_partner_keeps_transfer_type():
    out, _incoming = match_internal_transfer(make_tx("out", -500), make_tx("in", 500, "acc-2"))
    detached = detach_partner(out)
    assert detached["type"] == "InternalTransfer"
    assert detached["linked_transaction_id"] is None
    assert detached["user_description"] == out["user_description"]


def test_manual_edit_marks_row_and_updates_status():
    updated, linked = apply_transaction_update(
        make_tx("a", -100), {"main_category_id": "m", "sub_category_id": "s"}
    )
    assert updated["is_manually_changed"] is True
    assert updated["status"] == "yellow"
    assert linked is None


def test_status_edit_alone_does_not_mark_manual():
    updated, _linked = apply_transaction_update(make_tx("a", -100), {"status": "green"})
    assert updated["status"] == "green"
    assert updated["is_manually_changed"] is False


def test_changing_linked_type_restores_counterpart():
    expense, coverage = link_expense_and_coverage(make_tx("e", -100000), make_tx("c", 40000))
    updated, restored = apply_transaction_update(coverage, {"type": "Income"}, linked=expense)

    assert updated["type"] == "Income"
    assert updated["linked_transaction_id"] is None
    assert updated["corrected_amount"] is None
    assert restored["id"] == "e"
    assert restored["type"] == "ExpenseClaim"
    assert restored["linked_transaction_id"] is None
    assert restored["corrected_amount"] is None


@pytest.mark.parametrize(
    "updates",
    [
        {"amount": 5},
        {"type": "Gift"},
        {"status": "blue"},
        {"corrected_amount": 1.5},
    ],
)
def test_apply_transaction_update_rejects_invalid(updates):
    with pytest.raises(ValidationError):
        apply_transaction_update(make_tx("a", -100), updates)
