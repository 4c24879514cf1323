from household_budget.db import connect_db, parse_database_config, rewrite_sql
from household_budget.db_migrations import (
    MIGRATIONS,
    add_column_if_missing,
    apply_migrations,
    column_exists,
    ensure_table,
    get_db_health,
    index_exists,
    inspect_db_health,
)


class _FakeCursor:
    def fetchone(self):
        return None

    def fetchall(self):
        return []


class _FakePostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        return _FakeCursor()


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 5
    assert health["latest_version"] == 5
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = str(tmp_path / "twice.sqlite")
    apply_migrations(db_path)
    apply_migrations(db_path)

    conn = connect_db(parse_database_config(db_path))
    try:
        versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    finally:
        conn.close()
    assert versions == [1, 2, 3, 4, 5]


def test_upgrade_from_version_four(tmp_path):
    db_path = str(tmp_path / "v4.sqlite")
    conn = connect_db(parse_database_config(db_path))
    conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
    for version, migration_fn in MIGRATIONS[:4]:
        migration_fn(conn)
        conn.execute("INSERT INTO schema_version(version, applied_at) VALUES (?, ?)", (version, "2025-01-01"))
    conn.execute("INSERT INTO users (username, password_hash, created_at) VALUES ('alice', 'x', '2025-01-01')")
    conn.commit()
    assert not column_exists(conn, "transactions", "bank_status")
    conn.close()

    apply_migrations(db_path)

    conn = connect_db(parse_database_config(db_path))
    try:
        assert column_exists(conn, "transactions", "bank_status")
        assert column_exists(conn, "category_rules", "transaction_direction")
        assert index_exists(conn, "idx_transactions_linked_id")
        assert conn.execute("SELECT username FROM users").fetchone()["username"] == "alice"
        assert inspect_db_health(conn)["schema_version"] == 5
    finally:
        conn.close()


def test_health_reports_missing_table(tmp_path):
    db_path = str(tmp_path / "broken.sqlite")
    apply_migrations(db_path)
    conn = connect_db(parse_database_config(db_path))
    conn.execute("DROP TABLE import_runs")
    conn.commit()
    conn.close()

    health = get_db_health(db_path)
    assert health["ok"] is False
    assert health["missing_tables"] == ["import_runs"]
    assert "idx_import_runs_user_created" in health["missing_indexes"]


def test_postgres_table_definitions_are_rewritten():
    conn = _FakePostgresConnection()
    ensure_table(conn, "CREATE TABLE IF NOT EXISTS t (id INTEGER PRIMARY KEY AUTOINCREMENT, amount INTEGER NOT NULL)")
    add_column_if_missing(conn, "t", "bank_status TEXT")

    assert conn.statements == [
        "CREATE TABLE IF NOT EXISTS t (id BIGSERIAL PRIMARY KEY, amount BIGINT NOT NULL)",
        "ALTER TABLE t ADD COLUMN IF NOT EXISTS bank_status TEXT",
    ]


def test_postgres_money_columns_are_bigint():
    conn = _FakePostgresConnection()
    ensure_table(
        conn,
        "CREATE TABLE IF NOT EXISTS b (id INTEGER PRIMARY KEY AUTOINCREMENT, start_balance INTEGER, "
        "balance_after INTEGER, corrected_amount INTEGER, account_balance INTEGER, "
        "account_user_balance INTEGER, month INTEGER NOT NULL)",
    )

    assert conn.statements == [
        "CREATE TABLE IF NOT EXISTS b (id BIGSERIAL PRIMARY KEY, start_balance BIGINT, "
        "balance_after BIGINT, corrected_amount BIGINT, account_balance BIGINT, "
        "account_user_balance BIGINT, month INTEGER NOT NULL)"
    ]


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT * FROM accounts WHERE id = ? AND user_id = ?", ("a", 1))
    assert sql == "SELECT * FROM accounts WHERE id = %s AND user_id = %s"
    assert params == ("a", 1)

    sql, params = rewrite_sql("postgres", "PRAGMA table_info(transactions)", None)
    assert "information_schema.columns" in sql
    assert params == ("transactions",)

    assert rewrite_sql("postgres", "SELECT last_insert_rowid()", None) == ("SELECT lastval()", ())
    assert rewrite_sql("sqlite", "SELECT ?", (1,)) == ("SELECT ?", (1,))


def test_parse_database_config(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = parse_database_config("/tmp/budget.sqlite")
    assert config["backend"] == "sqlite"
    assert config["database_name"] == "budget.sqlite"

    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@localhost/budget")
    config = parse_database_config("/tmp/budget.sqlite")
    assert config["backend"] == "postgres"
    assert config["database_name"] == "budget"
