import json
import logging

from .errors import ValidationError


logger = logging.getLogger(__name__)

TRANSACTION_TYPES = (
    "Transaction",
    "InternalTransfer",
    "Savings",
    "CostCoverage",
    "ExpenseClaim",
    "Income",
)
STATUSES = ("red", "yellow", "green")
CONDITION_TYPES = ("textContains", "textStartsWith", "categoryMatch")
DIRECTIONS = ("all", "positive", "negative")
WILDCARD = "*"
DEFAULT_PRIORITY = 100


def is_protected(tx):
    return bool(tx.get("is_manually_changed")) or tx.get("status") == "green"


def _normalize_name(value):
    return " ".join((value or "").strip().lower().split())


def rule_applies_to_account(rule, account_id):
    account_ids = rule.get("applicable_account_ids") or []
    return not account_ids or account_id in account_ids


def rule_matches(rule, tx):
    if not rule.get("is_active", True):
        return False
    if not rule_applies_to_account(rule, tx.get("account_id")):
        return False

    amount = tx.get("amount") or 0
    direction = rule.get("transaction_direction") or "all"
    if direction == "positive" and amount < 0:
        return False
    if direction == "negative" and amount >= 0:
        return False

    condition = rule.get("condition_type")
    value = (rule.get("condition_value") or "").strip().lower()
    description = (tx.get("description") or "").lower()

    if condition == "textContains":
        return value == WILDCARD or (bool(value) and value in description)
    if condition == "textStartsWith":
        return value == WILDCARD or (bool(value) and description.startswith(value))
    if condition == "categoryMatch":
        bank_category = (rule.get("bank_category") or "").strip()
        if bank_category == WILDCARD:
            return True
        if not bank_category or (tx.get("bank_category") or "").strip() != bank_category:
            return False
        bank_sub_category = (rule.get("bank_sub_category") or "").strip()
        if not bank_sub_category or bank_sub_category == WILDCARD:
            return True
        return (tx.get("bank_sub_category") or "").strip() == bank_sub_category
    return False


def sort_rules(rules):
    def priority(rule):
        value = rule.get("priority")
        return DEFAULT_PRIORITY if value is None else value

    return sorted((rule for rule in rules if rule.get("is_active", True)), key=priority)


def find_matching_rule(tx, rules):
    for rule in sort_rules(rules):
        if rule_matches(rule, tx):
            return rule
    return None


def match_bank_category(tx, categories):
    bank_category = _normalize_name(tx.get("bank_category"))
    bank_sub_category = _normalize_name(tx.get("bank_sub_category"))
    if not bank_category or not bank_sub_category:
        return None
    for main in categories or []:
        if _normalize_name(main.get("name")) != bank_category:
            continue
        for sub in main.get("subcategories") or []:
            if _normalize_name(sub.get("name")) == bank_sub_category:
                return main["id"], sub["id"]
    return None


def determine_transaction_status(tx):
    has_categories = bool(tx.get("main_category_id")) and bool(tx.get("sub_category_id"))
    if tx.get("type") == "InternalTransfer":
        if tx.get("linked_transaction_id") and has_categories:
            return "green"
        return "yellow"
    if tx.get("status") == "green":
        return "green"
    return "yellow" if has_categories else "red"


def categorize(tx, rules, categories=None):
    """Apply the first matching rule, or the bank category fallback.

    Returns ``(transaction, source)`` where source is ``"rule"``,
    ``"bank_category"`` or ``None``. Protected rows come back unchanged.
    """
    result = dict(tx)
    if is_protected(tx):
        return result, None

    source = None
    rule = find_matching_rule(tx, rules or [])
    if rule is not None:
        if tx.get("type") != "InternalTransfer":
            if (tx.get("amount") or 0) >= 0:
                result["type"] = rule.get("positive_transaction_type") or "Transaction"
            else:
                result["type"] = rule.get("negative_transaction_type") or "Transaction"
        result["main_category_id"] = rule.get("main_category_id")
        result["sub_category_id"] = rule.get("sub_category_id")
        source = "rule"
    elif categories:
        matched = match_bank_category(tx, categories)
        if matched is not None:
            result["main_category_id"], result["sub_category_id"] = matched
            source = "bank_category"

    result["status"] = determine_transaction_status(result)
    return result, source


def apply_categorization_rules(tx, rules, categories=None):
    return categorize(tx, rules, categories)[0]


CATEGORIZED_FIELDS = ("type", "status", "main_category_id", "sub_category_id")


def apply_rules_to_stored(transactions, rules, categories=None):
    updates = []
    stats = {"processed": 0, "updated": 0, "rules_applied": 0, "bank_matched": 0}
    for tx in transactions:
        stats["processed"] += 1
        if is_protected(tx):
            continue
        result, source = categorize(tx, rules, categories)
        if source == "rule":
            stats["rules_applied"] += 1
        elif source == "bank_category":
            stats["bank_matched"] += 1
        if any(result.get(field) != tx.get(field) for field in CATEGORIZED_FIELDS):
            updates.append(result)
    stats["updated"] = len(updates)
    logger.info(
        "Re-applied rules to %s transactions: %s updated (%s by rule, %s by bank category)",
        stats["processed"],
        stats["updated"],
        stats["rules_applied"],
        stats["bank_matched"],
    )
    return updates, stats


def _parse_account_ids(value):
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValidationError("applicable_account_ids must be a list of account ids.") from exc
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError("applicable_account_ids must be a list of account ids.")
    return value


def normalize_rule_payload(payload, existing=None):
    """Validate a create/update payload for a category rule.

    With ``existing`` the payload is a partial update layered over it.
    """
    rule = dict(existing or {})
    rule.update({key: value for key, value in (payload or {}).items() if key != "id"})

    condition_type = rule.get("condition_type")
    if condition_type not in CONDITION_TYPES:
        raise ValidationError(f"condition_type must be one of {', '.join(CONDITION_TYPES)}.")
    if condition_type == "categoryMatch":
        if not (rule.get("bank_category") or "").strip():
            raise ValidationError("bank_category is required for categoryMatch rules.")
    elif not (rule.get("condition_value") or "").strip():
        raise ValidationError("condition_value is required for text rules.")

    priority = rule.get("priority")
    if priority is None or priority == "":
        priority = DEFAULT_PRIORITY
    try:
        priority = int(priority)
    except (TypeError, ValueError) as exc:
        raise ValidationError("priority must be an integer.") from exc

    for field in ("positive_transaction_type", "negative_transaction_type"):
        rule[field] = rule.get(field) or "Transaction"
        if rule[field] not in TRANSACTION_TYPES:
            raise ValidationError(f"{field} must be one of {', '.join(TRANSACTION_TYPES)}.")

    direction = rule.get("transaction_direction") or "all"
    if direction not in DIRECTIONS:
        raise ValidationError(f"transaction_direction must be one of {', '.join(DIRECTIONS)}.")

    return {
        "priority": priority,
        "condition_type": condition_type,
        "condition_value": (rule.get("condition_value") or "").strip(),
        "bank_category": (rule.get("bank_category") or "").strip() or None,
        "bank_sub_category": (rule.get("bank_sub_category") or "").strip() or None,
        "main_category_id": rule.get("main_category_id") or None,
        "sub_category_id": rule.get("sub_category_id") or None,
        "positive_transaction_type": rule["positive_transaction_type"],
        "negative_transaction_type": rule["negative_transaction_type"],
        "transaction_direction": direction,
        "applicable_account_ids": _parse_account_ids(rule.get("applicable_account_ids")),
        "is_active": bool(rule.get("is_active", True)),
    }
