import argparse
import json
import re
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "accounts": {
        "columns": {"id", "user_id", "name", "account_type", "start_balance", "created_at"},
        "indexes": {"idx_accounts_user_id"},
    },
    "main_categories": {
        "columns": {"id", "user_id", "name", "created_at"},
        "indexes": set(),
    },
    "sub_categories": {
        "columns": {"id", "user_id", "main_category_id", "name", "created_at"},
        "indexes": {"idx_sub_categories_main_category_id"},
    },
    "category_rules": {
        "columns": {
            "id",
            "user_id",
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
            "created_at",
        },
        "indexes": {"idx_category_rules_user_priority"},
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
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
        },
        "indexes": {
            "idx_transactions_account_date",
            "idx_transactions_user_date",
            "idx_transactions_linked_id",
        },
    },
    "planned_transfers": {
        "columns": {
            "id",
            "user_id",
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
            "created_at",
        },
        "indexes": {"idx_planned_transfers_user_month"},
    },
    "budget_posts": {
        "columns": {
            "id",
            "user_id",
            "month_key",
            "type",
            "account_id",
            "amount",
            "account_balance",
            "account_user_balance",
            "description",
            "main_category_id",
            "sub_category_id",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_budget_posts_user_month"},
    },
    "user_settings": {
        "columns": {"user_id", "setting_key", "setting_value", "updated_at"},
        "indexes": set(),
    },
    "csv_mappings": {
        "columns": {"id", "user_id", "file_fingerprint", "mapping_json", "created_at"},
        "indexes": set(),
    },
    "import_runs": {
        "columns": {"id", "user_id", "account_id", "file_source", "start_date", "end_date", "stats_json", "created_at"},
        "indexes": {"idx_import_runs_user_created"},
    },
}


# Money columns, widened to BIGINT on Postgres.
MONEY_COLUMN_RE = re.compile(
    r"\b(amount|corrected_amount|daily_amount|balance_after|start_balance|account_balance|account_user_balance)"
    r" INTEGER\b"
)


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
        create_sql = MONEY_COLUMN_RE.sub(r"\1 BIGINT", create_sql)
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            account_type TEXT NOT NULL DEFAULT 'checking',
            start_balance INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS main_categories (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS sub_categories (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            main_category_id TEXT NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(main_category_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (main_category_id) REFERENCES main_categories (id) ON DELETE CASCADE
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_accounts_user_id",
        "CREATE INDEX idx_accounts_user_id ON accounts(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_sub_categories_main_category_id",
        "CREATE INDEX idx_sub_categories_main_category_id ON sub_categories(main_category_id)",
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS category_rules (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            priority INTEGER NOT NULL DEFAULT 100,
            condition_type TEXT NOT NULL,
            condition_value TEXT,
            bank_category TEXT,
            bank_sub_category TEXT,
            main_category_id TEXT,
            sub_category_id TEXT,
            positive_transaction_type TEXT NOT NULL DEFAULT 'Transaction',
            negative_transaction_type TEXT NOT NULL DEFAULT 'Transaction',
            applicable_account_ids TEXT NOT NULL DEFAULT '[]',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            account_id TEXT NOT NULL,
            date TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            user_description TEXT,
            amount INTEGER NOT NULL,
            balance_after INTEGER,
            bank_category TEXT,
            bank_sub_category TEXT,
            type TEXT NOT NULL DEFAULT 'Transaction',
            status TEXT NOT NULL DEFAULT 'red',
            main_category_id TEXT,
            sub_category_id TEXT,
            linked_transaction_id TEXT,
            corrected_amount INTEGER,
            savings_target_id TEXT,
            is_manually_changed INTEGER NOT NULL DEFAULT 0,
            file_source TEXT,
            imported_at TEXT,
            updated_at TEXT,
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (account_id) REFERENCES accounts (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_transactions_account_date",
        "CREATE INDEX idx_transactions_account_date ON transactions(account_id, date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_date",
        "CREATE INDEX idx_transactions_user_date ON transactions(user_id, date)",
    )
    create_index_if_missing(
        conn,
        "idx_category_rules_user_priority",
        "CREATE INDEX idx_category_rules_user_priority ON category_rules(user_id, priority)",
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS planned_transfers (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            from_account_id TEXT NOT NULL,
            to_account_id TEXT NOT NULL,
            amount INTEGER NOT NULL DEFAULT 0,
            month TEXT NOT NULL,
            description TEXT,
            transfer_type TEXT NOT NULL DEFAULT 'monthly',
            daily_amount INTEGER,
            transfer_days TEXT NOT NULL DEFAULT '[]',
            main_category_id TEXT,
            sub_category_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS budget_posts (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            month_key TEXT NOT NULL,
            type TEXT NOT NULL,
            account_id TEXT,
            amount INTEGER NOT NULL DEFAULT 0,
            account_balance INTEGER,
            account_user_balance INTEGER,
            description TEXT,
            main_category_id TEXT,
            sub_category_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id INTEGER NOT NULL,
            setting_key TEXT NOT NULL,
            setting_value TEXT,
            updated_at TEXT,
            PRIMARY KEY (user_id, setting_key),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_planned_transfers_user_month",
        "CREATE INDEX idx_planned_transfers_user_month ON planned_transfers(user_id, month)",
    )
    create_index_if_missing(
        conn,
        "idx_budget_posts_user_month",
        "CREATE INDEX idx_budget_posts_user_month ON budget_posts(user_id, month_key)",
    )


def migration_004(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS csv_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            file_fingerprint TEXT NOT NULL,
            mapping_json TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, file_fingerprint),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_id TEXT NOT NULL,
            file_source TEXT,
            start_date TEXT,
            end_date TEXT,
            stats_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_runs_user_created",
        "CREATE INDEX idx_import_runs_user_created ON import_runs(user_id, created_at)",
    )


def migration_005(conn):
    add_column_if_missing(conn, "transactions", "bank_status TEXT")
    add_column_if_missing(conn, "category_rules", "transaction_direction TEXT NOT NULL DEFAULT 'all'")

    if column_exists(conn, "category_rules", "priority"):
        conn.execute("UPDATE category_rules SET priority = 100 WHERE priority IS NULL")

    create_index_if_missing(
        conn,
        "idx_transactions_linked_id",
        "CREATE INDEX idx_transactions_linked_id ON transactions(linked_transaction_id)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
    (5, migration_005),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        with conn.atomic():
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "latest_version": MIGRATIONS[-1][0],
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check household budget DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(json.dumps(get_db_health(args.db_path), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
