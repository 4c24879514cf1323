import logging
from collections import defaultdict

from .errors import LinkError, ValidationError
from .rules import STATUSES, TRANSACTION_TYPES, determine_transaction_status


logger = logging.getLogger(__name__)

LINKED_TYPES = ("CostCoverage", "ExpenseClaim")
EDITABLE_FIELDS = (
    "type",
    "status",
    "main_category_id",
    "sub_category_id",
    "user_description",
    "corrected_amount",
    "linked_transaction_id",
    "savings_target_id",
    "is_manually_changed",
)
# Edits to these fields mark a row as hand-maintained so imports leave it alone.
MANUAL_FIELDS = ("type", "main_category_id", "sub_category_id", "user_description", "savings_target_id")


def match_internal_transfer(first, second, account_names=None):
    if first["id"] == second["id"]:
        raise LinkError("A transaction cannot be matched with itself.")
    if first.get("account_id") == second.get("account_id"):
        raise LinkError("Internal transfers must be between two different accounts.")

    names = account_names or {}
    first_account = names.get(first.get("account_id"), "Unknown account")
    second_account = names.get(second.get("account_id"), "Unknown account")

    def linked(tx, other, description):
        updated = dict(tx)
        updated.update(
            {
                "type": "InternalTransfer",
                "linked_transaction_id": other["id"],
                "user_description": description,
                "is_manually_changed": True,
            }
        )
        updated["status"] = determine_transaction_status(updated)
        return updated

    return (
        linked(first, second, f"Transfer to {second_account}, {second.get('date')}"),
        linked(second, first, f"Transfer from {first_account}, {first.get('date')}"),
    )


def link_expense_and_coverage(expense, coverage):
    """Link a payment that covers (part of) an expense.

    The covered amount is ``min(|expense|, coverage)``; both rows keep their
    bank amounts and carry the remainder in ``corrected_amount``.
    """
    if expense["id"] == coverage["id"]:
        raise LinkError("A transaction cannot cover itself.")
    expense_amount = expense.get("amount") or 0
    coverage_amount = coverage.get("amount") or 0
    if expense_amount >= 0:
        raise LinkError("The expense must be a negative transaction.")
    if coverage_amount <= 0:
        raise LinkError("The coverage must be a positive transaction.")

    covered = min(abs(expense_amount), coverage_amount)

    updated_expense = dict(expense)
    updated_expense.update(
        {
            "type": "ExpenseClaim",
            "linked_transaction_id": coverage["id"],
            "corrected_amount": expense_amount + covered,
            "is_manually_changed": True,
        }
    )
    updated_coverage = dict(coverage)
    updated_coverage.update(
        {
            "type": "CostCoverage",
            "linked_transaction_id": expense["id"],
            "corrected_amount": coverage_amount - covered,
            "is_manually_changed": True,
        }
    )
    updated_expense["status"] = determine_transaction_status(updated_expense)
    updated_coverage["status"] = determine_transaction_status(updated_coverage)
    return updated_expense, updated_coverage


def link_savings(tx, savings_target_id, main_category_id=None):
    if not savings_target_id:
        raise LinkError("A savings target is required.")
    updated = dict(tx)
    updated.update(
        {
            "type": "Savings",
            "savings_target_id": savings_target_id,
            "main_category_id": main_category_id or tx.get("main_category_id"),
            "is_manually_changed": True,
        }
    )
    updated["status"] = determine_transaction_status(updated)
    return updated


def detach_partner(tx):
    """Drop the link of a row whose partner was linked elsewhere; the type stays."""
    updated = dict(tx)
    updated["linked_transaction_id"] = None
    if tx.get("type") in LINKED_TYPES:
        updated["corrected_amount"] = None
    updated["status"] = determine_transaction_status(updated)
    return updated


def _reset_link(tx):
    updated = dict(tx)
    updated.update({"type": "Transaction", "linked_transaction_id": None})
    if tx.get("type") in LINKED_TYPES:
        updated["corrected_amount"] = None
    updated["status"] = determine_transaction_status(updated)
    return updated


def clear_invalid_links(transactions, account_ids):
    """Reset links that point at a missing row or involve an unknown account.

    Both sides of a broken pair go back to ``Transaction``; coverage/claim rows
    also lose their corrected amount.
    """
    by_id = {tx["id"]: tx for tx in transactions}
    changed = {}
    for tx in transactions:
        linked_id = tx.get("linked_transaction_id")
        if not linked_id:
            continue
        partner = by_id.get(linked_id)
        if (
            partner is not None
            and tx.get("account_id") in account_ids
            and partner.get("account_id") in account_ids
        ):
            continue
        if tx["id"] not in changed:
            changed[tx["id"]] = _reset_link(tx)
        if partner is not None and partner.get("linked_transaction_id") == tx["id"] and partner["id"] not in changed:
            changed[partner["id"]] = _reset_link(partner)
    return list(changed.values())


def previous_partners(pair, load_transaction):
    """Rows that still point at a member of ``pair`` but are about to lose it.

    ``load_transaction`` looks a row up by id. Returned rows are detached.
    """
    pair_ids = {tx["id"] for tx in pair}
    detached = []
    for tx in pair:
        linked_id = tx.get("linked_transaction_id")
        if not linked_id or linked_id in pair_ids:
            continue
        partner = load_transaction(linked_id)
        if partner is not None and partner.get("linked_transaction_id") == tx["id"]:
            detached.append(detach_partner(partner))
    return detached


def auto_match_transfers(transactions, account_ids, account_names=None):
    """Link unlinked internal transfers that have exactly one counterpart.

    Returns ``(changed_transactions, matched_pairs)``. Invalid links are
    cleared first; a counterpart is an unlinked row on another known account
    with the same date, opposite sign and equal absolute amount.
    """
    known_accounts = set(account_ids)
    changed = {tx["id"]: tx for tx in clear_invalid_links(transactions, known_accounts)}
    current = [changed.get(tx["id"], tx) for tx in transactions]

    by_date = defaultdict(list)
    for tx in current:
        by_date[tx.get("date")].append(tx)

    linked_ids = {tx["id"] for tx in current if tx.get("linked_transaction_id")}
    pairs = []
    for tx in current:
        if tx.get("type") != "InternalTransfer" or tx["id"] in linked_ids:
            continue
        if tx.get("account_id") not in known_accounts:
            continue
        amount = tx.get("amount") or 0
        if amount == 0:
            continue
        candidates = [
            other
            for other in by_date[tx.get("date")]
            if other["id"] != tx["id"]
            and other["id"] not in linked_ids
            and other.get("account_id") in known_accounts
            and other.get("account_id") != tx.get("account_id")
            and (other.get("amount") or 0) == -amount
        ]
        if len(candidates) != 1:
            continue
        # The outgoing side is always described as "Transfer to".
        outgoing, incoming = (tx, candidates[0]) if amount < 0 else (candidates[0], tx)
        first, second = match_internal_transfer(outgoing, incoming, account_names)
        changed[first["id"]] = first
        changed[second["id"]] = second
        linked_ids.update({first["id"], second["id"]})
        pairs.append((first["id"], second["id"]))

    logger.info("Auto-matched %s internal transfer pairs (%s rows changed)", len(pairs), len(changed))
    return list(changed.values()), pairs


def _validate_updates(updates):
    unknown = sorted(set(updates) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}.")
    if "type" in updates and updates["type"] not in TRANSACTION_TYPES:
        raise ValidationError(f"type must be one of {', '.join(TRANSACTION_TYPES)}.")
    if "status" in updates and updates["status"] not in STATUSES:
        raise ValidationError(f"status must be one of {', '.join(STATUSES)}.")
    corrected = updates.get("corrected_amount")
    if corrected is not None and (isinstance(corrected, bool) or not isinstance(corrected, int)):
        raise ValidationError("corrected_amount must be an integer amount in minor units.")


def apply_transaction_update(original, updates, linked=None):
    """Apply a user edit to one transaction.

    Returns ``(updated, linked_updated)``; ``linked_updated`` is the restored
    counterpart when the edit moved a coverage/claim row to another type,
    otherwise ``None``.
    """
    _validate_updates(updates)
    updated = dict(original)
    updated.update(updates)

    if any(field in updates for field in MANUAL_FIELDS) and "is_manually_changed" not in updates:
        updated["is_manually_changed"] = True

    linked_updated = None
    new_type = updates.get("type")
    if (
        original.get("type") in LINKED_TYPES
        and new_type is not None
        and new_type not in LINKED_TYPES
        and original.get("linked_transaction_id")
    ):
        updated["linked_transaction_id"] = None
        updated["corrected_amount"] = None
        if linked is not None:
            linked_updated = dict(linked)
            linked_updated.update({"linked_transaction_id": None, "corrected_amount": None})
            linked_updated["status"] = determine_transaction_status(linked_updated)

    if "status" not in updates:
        updated["status"] = determine_transaction_status(updated)
    return updated, linked_updated
