import pytest

from household_budget.errors import ValidationError
from household_budget.rules import (
    apply_categorization_rules,
    apply_rules_to_stored,
    determine_transaction_status,
    find_matching_rule,
    is_protected,
    normalize_rule_payload,
    rule_matches,
)


CATEGORIES = [
    {"id": "main-food", "name": "Mat", "subcategories": [{"id": "sub-groceries", "name": "Livsmedel"}]},
    {"id": "main-home", "name": "Boende", "subcategories": [{"id": "sub-rent", "name": "Hyra"}]},
]


def make_tx(**overrides):
    tx = {
        "id": "tx-1",
        "account_id": "acc-1",
        "date": "2025-01-10",
        "description": "ICA Nära Odenplan",
        "amount": -12345,
        "bank_category": "Mat",
        "bank_sub_category": "Livsmedel",
        "type": "Transaction",
        "status": "red",
        "main_category_id": None,
        "sub_category_id": None,
        "linked_transaction_id": None,
        "is_manually_changed": False,
    }
    tx.update(overrides)
    return tx


def make_rule(**overrides):
    rule = {
        "id": "rule-1",
        "priority": 100,
        "condition_type": "textContains",
        "condition_value": "ica",
        "main_category_id": "main-food",
        "sub_category_id": "sub-groceries",
        "positive_transaction_type": "Income",
        "negative_transaction_type": "Transaction",
        "transaction_direction": "all",
        "applicable_account_ids": [],
        "is_active": True,
    }
    rule.update(overrides)
    return rule


def test_text_contains_is_case_insensitive():
    assert rule_matches(make_rule(condition_value="ICA"), make_tx())
    assert not rule_matches(make_rule(condition_value="coop"), make_tx())


def test_text_starts_with():
    assert rule_matches(make_rule(condition_type="textStartsWith", condition_value="ica nära"), make_tx())
    assert not rule_matches(make_rule(condition_type="textStartsWith", condition_value="nära"), make_tx())


def test_wildcard_matches_everything():
    assert rule_matches(make_rule(condition_value="*"), make_tx(description="anything"))
    assert rule_matches(make_rule(condition_type="categoryMatch", bank_category="*"), make_tx(bank_category=""))


def test_category_match_is_exact():
    rule = make_rule(condition_type="categoryMatch", bank_category="Mat", bank_sub_category="Livsmedel")
    assert rule_matches(rule, make_tx())
    assert not rule_matches(rule, make_tx(bank_sub_category="Restaurang"))
    assert not rule_matches(rule, make_tx(bank_category="mat"))
    assert rule_matches(make_rule(condition_type="categoryMatch", bank_category="Mat"), make_tx(bank_sub_category="X"))


def test_direction_and_account_restrictions():
    assert not rule_matches(make_rule(transaction_direction="positive"), make_tx())
    assert rule_matches(make_rule(transaction_direction="negative"), make_tx())
    assert rule_matches(make_rule(transaction_direction="positive"), make_tx(amount=0))
    assert not rule_matches(make_rule(applicable_account_ids=["acc-2"]), make_tx())
    assert rule_matches(make_rule(applicable_account_ids=["acc-1", "acc-2"]), make_tx())
    assert not rule_matches(make_rule(is_active=False), make_tx())


def test_lowest_priority_wins_and_ties_keep_order():
    rules = [
        make_rule(id="late", priority=50, condition_value="ica"),
        make_rule(id="early", priority=10, condition_value="odenplan"),
        make_rule(id="tie", priority=10, condition_value="nära"),
    ]
    assert find_matching_rule(make_tx(), rules)["id"] == "early"


def test_apply_rule_sets_categories_type_and_status():
    result = apply_categorization_rules(make_tx(amount=5000), [make_rule()])
    assert result["main_category_id"] == "main-food"
    assert result["sub_category_id"] == "sub-groceries"
    assert result["type"] == "Income"
    assert result["status"] == "yellow"

    negative = apply_categorization_rules(make_tx(), [make_rule()])
    assert negative["type"] == "Transaction"


def test_apply_rule_keeps_internal_transfer_type():
    result = apply_categorization_rules(make_tx(type="InternalTransfer"), [make_rule()])
    assert result["type"] == "InternalTransfer"
    assert result["main_category_id"] == "main-food"
    assert result["status"] == "yellow"


def test_protected_rows_are_untouched():
    manual = make_tx(is_manually_changed=True, main_category_id="main-home", sub_category_id="sub-rent")
    approved = make_tx(status="green")
    assert apply_categorization_rules(manual, [make_rule()]) == manual
    assert apply_categorization_rules(approved, [make_rule()]) == approved
    assert is_protected(manual) and is_protected(approved)


def test_bank_category_fallback():
    result = apply_categorization_rules(make_tx(bank_category="mat", bank_sub_category="LIVSMEDEL"), [], CATEGORIES)
    assert result["main_category_id"] == "main-food"
    assert result["sub_category_id"] == "sub-groceries"
    assert result["status"] == "yellow"

    unmatched = apply_categorization_rules(make_tx(bank_category="Okänd"), [], CATEGORIES)
    assert unmatched["main_category_id"] is None
    assert unmatched["status"] == "red"


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, "red"),
        ({"main_category_id": "m"}, "red"),
        ({"main_category_id": "m", "sub_category_id": "s"}, "yellow"),
        ({"status": "green"}, "green"),
        ({"type": "InternalTransfer", "main_category_id": "m", "sub_category_id": "s"}, "yellow"),
        ({"type": "InternalTransfer", "linked_transaction_id": "tx-2"}, "yellow"),
        (
            {"type": "InternalTransfer", "linked_transaction_id": "tx-2", "main_category_id": "m", "sub_category_id": "s"},
            "green",
        ),
        ({"type": "InternalTransfer", "status": "green"}, "yellow"),
    ],
)
def test_determine_transaction_status(overrides, expected):
    assert determine_transaction_status(make_tx(**overrides)) == expected


def test_apply_rules_to_stored_reports_stats():
    transactions = [
        make_tx(id="a"),
        make_tx(id="b", description="Hyresavi", bank_category="Boende", bank_sub_category="Hyra"),
        make_tx(id="c", description="ICA", is_manually_changed=True),
        make_tx(id="d", description="Okänt", bank_category="", bank_sub_category=""),
    ]
    updates, stats = apply_rules_to_stored(transactions, [make_rule()], CATEGORIES)

    assert stats == {"processed": 4, "updated": 2, "rules_applied": 1, "bank_matched": 1}
    assert {tx["id"] for tx in updates} == {"a", "b"}


def test_normalize_rule_payload_defaults():
    rule = normalize_rule_payload({"condition_type": "textContains", "condition_value": " Spotify "})
    assert rule["priority"] == 100
    assert rule["condition_value"] == "Spotify"
    assert rule["positive_transaction_type"] == "Transaction"
    assert rule["negative_transaction_type"] == "Transaction"
    assert rule["transaction_direction"] == "all"
    assert rule["applicable_account_ids"] == []
    assert rule["is_active"] is True


def test_normalize_rule_payload_partial_update():
    existing = normalize_rule_payload({"condition_type": "textContains", "condition_value": "sl", "priority": 5})
    updated = normalize_rule_payload({"priority": "7", "is_active": False}, existing=existing)
    assert updated["priority"] == 7
    assert updated["condition_value"] == "sl"
    assert updated["is_active"] is False


@pytest.mark.parametrize(
    "payload",
    [
        {"condition_type": "regex", "condition_value": "x"},
        {"condition_type": "textContains", "condition_value": ""},
        {"condition_type": "categoryMatch"},
        {"condition_type": "textContains", "condition_value": "x", "priority": "high"},
        {"condition_type": "textContains", "condition_value": "x", "negative_transaction_type": "Gift"},
        {"condition_type": "textContains", "condition_value": "x", "transaction_direction": "up"},
        {"condition_type": "textContains", "condition_value": "x", "applicable_account_ids": "acc-1"},
    ],
)
def test_normalize_rule_payload_rejects_invalid(payload):
    with pytest.raises(ValidationError):
        normalize_rule_payload(payload)
