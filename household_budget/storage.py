import json
import logging
import uuid
from datetime import datetime, timezone

from .db import row_to_dict


logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = (
    "id",
    "account_id",
    "date",
    "description",
    "user_description",
    "amount",
    "balance_after",
    "bank_category",
    "bank_sub_category",
    "bank_status",
    "type",
    "status",
    "main_category_id",
    "sub_category_id",
    "linked_transaction_id",
    "corrected_amount",
    "savings_target_id",
    "is_manually_changed",
    "file_source",
    "imported_at",
    "updated_at",
)
RULE_COLUMNS = (
    "priority",
    "condition_type",
    "condition_value",
    "bank_category",
    "bank_sub_category",
    "main_category_id",
    "sub_category_id",
    "positive_transaction_type",
    "negative_transaction_type",
    "transaction_direction",
    "applicable_account_ids",
    "is_active",
)
PLANNED_TRANSFER_COLUMNS = (
    "from_account_id",
    "to_account_id",
    "amount",
    "month",
    "description",
    "transfer_type",
    "daily_amount",
    "transfer_days",
    "main_category_id",
    "sub_category_id",
)
DEFAULT_SETTINGS = {"payday": 25, "autoUpdateBalance": True}


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_id():
    return str(uuid.uuid4())


def _placeholders(values):
    return ", ".join(["?"] * len(values))


# Users


def create_user(db, username, password_hash):
    db.execute(
        "INSERT INTO users (username, password_hash, created_at) VALUES (?, ?, ?)",
        (username, password_hash, utc_now_text()),
    )
    return db.last_insert_id()


def get_user(db, user_id):
    return row_to_dict(db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())


def get_user_by_username(db, username):
    return row_to_dict(db.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone())


# Accounts


def list_accounts(db, user_id):
    rows = db.execute("SELECT * FROM accounts WHERE user_id = ? ORDER BY name", (user_id,)).fetchall()
    return [row_to_dict(row) for row in rows]


def get_account(db, user_id, account_id):
    return row_to_dict(
        db.execute("SELECT * FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)).fetchone()
    )


def get_account_by_name(db, user_id, name):
    return row_to_dict(
        db.execute("SELECT * FROM accounts WHERE name = ? AND user_id = ?", (name, user_id)).fetchone()
    )


def create_account(db, user_id, name, account_id=None, account_type="checking", start_balance=0):
    account_id = account_id or new_id()
    db.execute(
        "INSERT INTO accounts (id, user_id, name, account_type, start_balance, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (account_id, user_id, name, account_type, start_balance, utc_now_text()),
    )
    return get_account(db, user_id, account_id)


def update_account(db, user_id, account_id, values):
    allowed = {key: values[key] for key in ("name", "account_type", "start_balance") if key in values}
    if allowed:
        assignments = ", ".join(f"{key} = ?" for key in allowed)
        db.execute(
            f"UPDATE accounts SET {assignments} WHERE id = ? AND user_id = ?",
            [*allowed.values(), account_id, user_id],
        )
    return get_account(db, user_id, account_id)


def count_account_transactions(db, user_id, account_id):
    row = db.execute(
        "SELECT COUNT(*) FROM transactions WHERE user_id = ? AND account_id = ?",
        (user_id, account_id),
    ).fetchone()
    return int(row[0])


def delete_account(db, user_id, account_id):
    return db.execute("DELETE FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)).rowcount


# Categories


def list_categories(db, user_id):
    mains = db.execute(
        "SELECT id, name FROM main_categories WHERE user_id = ? ORDER BY name", (user_id,)
    ).fetchall()
    subs = db.execute(
        "SELECT id, name, main_category_id FROM sub_categories WHERE user_id = ? ORDER BY name", (user_id,)
    ).fetchall()
    categories = [dict(row_to_dict(row), subcategories=[]) for row in mains]
    by_id = {category["id"]: category for category in categories}
    for row in subs:
        parent = by_id.get(row["main_category_id"])
        if parent is not None:
            parent["subcategories"].append(row_to_dict(row))
    return categories


def get_main_category(db, user_id, category_id):
    return row_to_dict(
        db.execute("SELECT * FROM main_categories WHERE id = ? AND user_id = ?", (category_id, user_id)).fetchone()
    )


def create_main_category(db, user_id, name):
    category_id = new_id()
    db.execute(
        "INSERT INTO main_categories (id, user_id, name, created_at) VALUES (?, ?, ?, ?)",
        (category_id, user_id, name, utc_now_text()),
    )
    return {"id": category_id, "name": name, "subcategories": []}


def create_sub_category(db, user_id, main_category_id, name):
    category_id = new_id()
    db.execute(
        "INSERT INTO sub_categories (id, user_id, main_category_id, name, created_at) VALUES (?, ?, ?, ?, ?)",
        (category_id, user_id, main_category_id, name, utc_now_text()),
    )
    return {"id": category_id, "name": name, "main_category_id": main_category_id}


def delete_main_category(db, user_id, category_id):
    db.execute("DELETE FROM sub_categories WHERE main_category_id = ? AND user_id = ?", (category_id, user_id))
    return db.execute("DELETE FROM main_categories WHERE id = ? AND user_id = ?", (category_id, user_id)).rowcount


def delete_sub_category(db, user_id, category_id):
    return db.execute("DELETE FROM sub_categories WHERE id = ? AND user_id = ?", (category_id, user_id)).rowcount


# Category rules


def _decode_rule(row):
    rule = row_to_dict(row)
    rule["applicable_account_ids"] = json.loads(rule.get("applicable_account_ids") or "[]")
    rule["is_active"] = bool(rule.get("is_active"))
    return rule


def _encode_rule_values(rule):
    values = []
    for column in RULE_COLUMNS:
        value = rule.get(column)
        if column == "applicable_account_ids":
            value = json.dumps(value or [])
        elif column == "is_active":
            value = 1 if value else 0
        values.append(value)
    return values


def list_rules(db, user_id):
    rows = db.execute(
        "SELECT * FROM category_rules WHERE user_id = ? ORDER BY priority, created_at, id", (user_id,)
    ).fetchall()
    return [_decode_rule(row) for row in rows]


def get_rule(db, user_id, rule_id):
    row = db.execute("SELECT * FROM category_rules WHERE id = ? AND user_id = ?", (rule_id, user_id)).fetchone()
    return _decode_rule(row) if row is not None else None


def create_rule(db, user_id, rule):
    rule_id = new_id()
    columns = ("id", "user_id", *RULE_COLUMNS, "created_at")
    db.execute(
        f"INSERT INTO category_rules ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
        [rule_id, user_id, *_encode_rule_values(rule), utc_now_text()],
    )
    return get_rule(db, user_id, rule_id)


def update_rule(db, user_id, rule_id, rule):
    assignments = ", ".join(f"{column} = ?" for column in RULE_COLUMNS)
    db.execute(
        f"UPDATE category_rules SET {assignments} WHERE id = ? AND user_id = ?",
        [*_encode_rule_values(rule), rule_id, user_id],
    )
    return get_rule(db, user_id, rule_id)


def delete_rule(db, user_id, rule_id):
    return db.execute("DELETE FROM category_rules WHERE id = ? AND user_id = ?", (rule_id, user_id)).rowcount


# Transactions


def _decode_transaction(row):
    tx = row_to_dict(row)
    tx.pop("user_id", None)
    tx["is_manually_changed"] = bool(tx.get("is_manually_changed"))
    return tx


def list_transactions(db, user_id, account_id=None, start_date=None, end_date=None, status=None, tx_type=None):
    clauses = ["user_id = ?"]
    params = [user_id]
    if account_id:
        clauses.append("account_id = ?")
        params.append(account_id)
    if start_date:
        clauses.append("date >= ?")
        params.append(start_date)
    if end_date:
        clauses.append("date <= ?")
        params.append(end_date)
    if status:
        clauses.append("status = ?")
        params.append(status)
    if tx_type:
        clauses.append("type = ?")
        params.append(tx_type)
    rows = db.execute(
        f"SELECT * FROM transactions WHERE {' AND '.join(clauses)} ORDER BY date DESC, id",
        params,
    ).fetchall()
    return [_decode_transaction(row) for row in rows]


def get_transaction(db, user_id, transaction_id):
    row = db.execute(
        "SELECT * FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id)
    ).fetchone()
    return _decode_transaction(row) if row is not None else None


def _transaction_values(tx, now):
    values = []
    for column in TRANSACTION_COLUMNS:
        value = tx.get(column)
        if column == "is_manually_changed":
            value = 1 if value else 0
        elif column == "updated_at":
            value = now
        elif column == "imported_at":
            value = value or now
        elif column in ("type",):
            value = value or "Transaction"
        elif column in ("status",):
            value = value or "red"
        elif column == "description":
            value = value or ""
        values.append(value)
    return values


def insert_transactions(db, user_id, transactions):
    now = utc_now_text()
    columns = ("user_id", *TRANSACTION_COLUMNS)
    sql = f"INSERT INTO transactions ({', '.join(columns)}) VALUES ({_placeholders(columns)})"
    return db.executemany(sql, ([user_id, *_transaction_values(tx, now)] for tx in transactions))


def update_transactions(db, user_id, transactions):
    now = utc_now_text()
    columns = [column for column in TRANSACTION_COLUMNS if column != "id"]
    assignments = ", ".join(f"{column} = ?" for column in columns)
    sql = f"UPDATE transactions SET {assignments} WHERE id = ? AND user_id = ?"
    count = 0
    for tx in transactions:
        values = _transaction_values(tx, now)[1:]
        count += db.execute(sql, [*values, tx["id"], user_id]).rowcount
    return count


def delete_transactions(db, user_id, transaction_ids):
    ids = list(dict.fromkeys(transaction_ids))
    if not ids:
        return 0
    result = db.execute(
        f"DELETE FROM transactions WHERE user_id = ? AND id IN ({_placeholders(ids)})",
        [user_id, *ids],
    )
    return result.rowcount


def sync_import_plan(db, user_id, plan):
    """Write an import plan: deletes, then updates, then creates.

    Does not commit; the caller owns the transaction so a failure can roll
    the whole import back.
    """
    deleted = delete_transactions(db, user_id, [tx["id"] for tx in plan["delete"]])
    updated = update_transactions(db, user_id, plan["update"])
    created = insert_transactions(db, user_id, plan["create"])
    logger.info("Synced import plan for account %s: %s created, %s updated, %s deleted",
                plan["account_id"], created, updated, deleted)
    return {"created": created, "updated": updated, "deleted": deleted}


# Planned transfers


def _decode_planned_transfer(row):
    transfer = row_to_dict(row)
    transfer.pop("user_id", None)
    transfer["transfer_days"] = json.loads(transfer.get("transfer_days") or "[]")
    return transfer


def _planned_transfer_values(transfer):
    return [
        json.dumps(transfer.get(column) or []) if column == "transfer_days" else transfer.get(column)
        for column in PLANNED_TRANSFER_COLUMNS
    ]


def list_planned_transfers(db, user_id, month=None):
    if month:
        rows = db.execute(
            "SELECT * FROM planned_transfers WHERE user_id = ? AND month = ? ORDER BY created_at, id",
            (user_id, month),
        ).fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM planned_transfers WHERE user_id = ? ORDER BY month, created_at, id", (user_id,)
        ).fetchall()
    return [_decode_planned_transfer(row) for row in rows]


def get_planned_transfer(db, user_id, transfer_id):
    row = db.execute(
        "SELECT * FROM planned_transfers WHERE id = ? AND user_id = ?", (transfer_id, user_id)
    ).fetchone()
    return _decode_planned_transfer(row) if row is not None else None


def create_planned_transfer(db, user_id, transfer):
    transfer_id = new_id()
    columns = ("id", "user_id", *PLANNED_TRANSFER_COLUMNS, "created_at")
    db.execute(
        f"INSERT INTO planned_transfers ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
        [transfer_id, user_id, *_planned_transfer_values(transfer), utc_now_text()],
    )
    return get_planned_transfer(db, user_id, transfer_id)


def update_planned_transfer(db, user_id, transfer_id, transfer):
    assignments = ", ".join(f"{column} = ?" for column in PLANNED_TRANSFER_COLUMNS)
    db.execute(
        f"UPDATE planned_transfers SET {assignments} WHERE id = ? AND user_id = ?",
        [*_planned_transfer_values(transfer), transfer_id, user_id],
    )
    return get_planned_transfer(db, user_id, transfer_id)


def delete_planned_transfer(db, user_id, transfer_id):
    return db.execute(
        "DELETE FROM planned_transfers WHERE id = ? AND user_id = ?", (transfer_id, user_id)
    ).rowcount


# Budget posts


def list_budget_posts(db, user_id, month_key):
    rows = db.execute(
        "SELECT * FROM budget_posts WHERE user_id = ? AND month_key = ? ORDER BY type, account_id, id",
        (user_id, month_key),
    ).fetchall()
    posts = []
    for row in rows:
        post = row_to_dict(row)
        post.pop("user_id", None)
        posts.append(post)
    return posts


def upsert_balance_post(db, user_id, account_id, month_key, balance, update_user_balance=True):
    """Set the opening balance post of an account for a month."""
    now = utc_now_text()
    existing = db.execute(
        "SELECT id FROM budget_posts WHERE user_id = ? AND month_key = ? AND type = 'Balance' AND account_id = ?",
        (user_id, month_key, account_id),
    ).fetchone()
    if existing is not None:
        if update_user_balance:
            db.execute(
                "UPDATE budget_posts SET account_balance = ?, account_user_balance = ?, updated_at = ? WHERE id = ?",
                (balance, balance, now, existing["id"]),
            )
        else:
            db.execute(
                "UPDATE budget_posts SET account_balance = ?, updated_at = ? WHERE id = ?",
                (balance, now, existing["id"]),
            )
        return existing["id"]

    post_id = new_id()
    db.execute(
        """
        INSERT INTO budget_posts (id, user_id, month_key, type, account_id, amount, account_balance,
                                  account_user_balance, description, created_at, updated_at)
        VALUES (?, ?, ?, 'Balance', ?, 0, ?, ?, ?, ?, ?)
        """,
        (
            post_id,
            user_id,
            month_key,
            account_id,
            balance,
            balance if update_user_balance else None,
            "Opening balance from bank file",
            now,
            now,
        ),
    )
    return post_id


# Settings


def _decode_setting(value):
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def get_settings(db, user_id, defaults=None):
    settings = dict(DEFAULT_SETTINGS)
    settings.update(defaults or {})
    rows = db.execute(
        "SELECT setting_key, setting_value FROM user_settings WHERE user_id = ?", (user_id,)
    ).fetchall()
    for row in rows:
        settings[row["setting_key"]] = _decode_setting(row["setting_value"])
    return settings


def set_setting(db, user_id, key, value):
    encoded = json.dumps(value)
    now = utc_now_text()
    result = db.execute(
        "UPDATE user_settings SET setting_value = ?, updated_at = ? WHERE user_id = ? AND setting_key = ?",
        (encoded, now, user_id, key),
    )
    if result.rowcount == 0:
        db.execute(
            "INSERT INTO user_settings (user_id, setting_key, setting_value, updated_at) VALUES (?, ?, ?, ?)",
            (user_id, key, encoded, now),
        )
    return value


# CSV mappings and import runs


def get_csv_mapping(db, user_id, file_fingerprint):
    row = db.execute(
        "SELECT mapping_json FROM csv_mappings WHERE user_id = ? AND file_fingerprint = ?",
        (user_id, file_fingerprint),
    ).fetchone()
    return json.loads(row["mapping_json"]) if row is not None else None


def save_csv_mapping(db, user_id, file_fingerprint, mapping):
    payload = json.dumps(mapping, sort_keys=True)
    result = db.execute(
        "UPDATE csv_mappings SET mapping_json = ? WHERE user_id = ? AND file_fingerprint = ?",
        (payload, user_id, file_fingerprint),
    )
    if result.rowcount == 0:
        db.execute(
            "INSERT INTO csv_mappings (user_id, file_fingerprint, mapping_json, created_at) VALUES (?, ?, ?, ?)",
            (user_id, file_fingerprint, payload, utc_now_text()),
        )


def record_import_run(db, user_id, account_id, file_source, start_date, end_date, stats):
    db.execute(
        """
        INSERT INTO import_runs (user_id, account_id, file_source, start_date, end_date, stats_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, account_id, file_source, start_date, end_date, json.dumps(stats, sort_keys=True), utc_now_text()),
    )
    return db.last_insert_id()


def list_import_runs(db, user_id, limit=20):
    rows = db.execute(
        "SELECT * FROM import_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?", (user_id, limit)
    ).fetchall()
    runs = []
    for row in rows:
        run = row_to_dict(row)
        run.pop("user_id", None)
        run["stats"] = json.loads(run.pop("stats_json") or "{}")
        runs.append(run)
    return runs
