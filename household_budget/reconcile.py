import logging
import re
import uuid
from collections import defaultdict

from .rules import categorize, is_protected


logger = logging.getLogger(__name__)

# Fields the bank owns: always refreshed from the file on re-import.
BANK_FIELDS = (
    "date",
    "amount",
    "description",
    "balance_after",
    "bank_category",
    "bank_sub_category",
    "bank_status",
    "file_source",
)


def normalize_description(value):
    return re.sub(r"\s+", " ", (value or "").strip().lower())


def transaction_fingerprint(tx, include_balance=True):
    balance = tx.get("balance_after") if include_balance else None
    return "|".join(
        [
            str(tx.get("date") or "")[:10],
            normalize_description(tx.get("description")),
            str(int(tx.get("amount") or 0)),
            "" if balance is None else str(int(balance)),
        ]
    )


def dedupe_incoming(rows):
    seen = set()
    unique_rows = []
    for row in rows:
        fingerprint = transaction_fingerprint(row)
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        unique_rows.append(row)
    return unique_rows, len(rows) - len(unique_rows)


def file_date_range(rows):
    dates = [row["date"] for row in rows if row.get("date")]
    if not dates:
        return None, None
    return min(dates), max(dates)


def new_transaction_id():
    return str(uuid.uuid4())


def _build_match_index(candidates):
    index = defaultdict(list)
    for tx in candidates:
        index[transaction_fingerprint(tx, include_balance=False)].append(tx)
    return index


def _take_match(index, row, taken):
    group = index.get(transaction_fingerprint(row, include_balance=False)) or []
    available = [tx for tx in group if tx["id"] not in taken]
    balance = row.get("balance_after")
    if balance is None:
        return available[0] if available else None
    for tx in available:
        if tx.get("balance_after") == balance:
            return tx
    # Rows stored before balances were recorded still match on the rest of the fingerprint.
    for tx in available:
        if tx.get("balance_after") is None:
            return tx
    return None


def merge_import_row(stored, row, rules=None, categories=None):
    merged = dict(stored)
    for field in BANK_FIELDS:
        merged[field] = row.get(field)
    if is_protected(stored):
        return merged, True

    merged["type"] = row.get("type") or "Transaction"
    merged, _source = categorize(merged, rules or [], categories)
    return merged, False


def build_new_transaction(row, rules=None, categories=None, id_factory=new_transaction_id):
    tx = dict(row)
    tx.pop("row_index", None)
    tx.update(
        {
            "id": id_factory(),
            "user_description": None,
            "main_category_id": None,
            "sub_category_id": None,
            "linked_transaction_id": None,
            "corrected_amount": None,
            "savings_target_id": None,
            "is_manually_changed": False,
        }
    )
    tx, _source = categorize(tx, rules or [], categories)
    return tx


def plan_import(incoming, existing, account_id, rules=None, categories=None, id_factory=new_transaction_id):
    """Work out how an imported file changes the stored rows of one account.

    Only stored rows of ``account_id`` dated inside the file's date range are
    candidates; every other row is kept as is. Each incoming row claims at
    most one candidate. Matched rows become updates, unmatched incoming rows
    creates and unclaimed candidates deletes.
    """
    incoming, duplicates_in_file = dedupe_incoming(incoming)
    start_date, end_date = file_date_range(incoming)
    if start_date is None:
        raise ValueError("Cannot plan an import without dated rows.")

    keep = []
    candidates = []
    for tx in existing:
        if tx.get("account_id") != account_id:
            continue
        if start_date <= str(tx.get("date") or "")[:10] <= end_date:
            candidates.append(tx)
        else:
            keep.append(tx)

    index = _build_match_index(candidates)
    taken = set()
    create, update, imported = [], [], []
    protected_count = 0
    for row in incoming:
        match = _take_match(index, row, taken)
        if match is None:
            tx = build_new_transaction(row, rules, categories, id_factory=id_factory)
            create.append(tx)
        else:
            taken.add(match["id"])
            tx, preserved = merge_import_row(match, row, rules, categories)
            if preserved:
                protected_count += 1
            update.append(tx)
        imported.append(tx)

    delete = [tx for tx in candidates if tx["id"] not in taken]
    logger.info(
        "Import plan for account %s (%s..%s): %s create, %s update, %s delete, %s kept",
        account_id,
        start_date,
        end_date,
        len(create),
        len(update),
        len(delete),
        len(keep),
    )
    return {
        "account_id": account_id,
        "start_date": start_date,
        "end_date": end_date,
        "keep": keep,
        "create": create,
        "update": update,
        "delete": delete,
        "imported": imported,
        "duplicates_in_file": duplicates_in_file,
        "protected_count": protected_count,
    }


def summarize_plan(plan):
    return {
        "account_id": plan["account_id"],
        "start_date": plan["start_date"],
        "end_date": plan["end_date"],
        "created": len(plan["create"]),
        "updated": len(plan["update"]),
        "deleted": len(plan["delete"]),
        "kept": len(plan["keep"]),
        "protected": plan["protected_count"],
        "duplicates_removed": plan["duplicates_in_file"],
        "created_ids": [tx["id"] for tx in plan["create"]],
        "updated_ids": [tx["id"] for tx in plan["update"]],
        "deleted_ids": [tx["id"] for tx in plan["delete"]],
    }
