import pytest

from household_budget.db import BudgetConnection, ResultRow, connect_db, parse_database_config, row_to_dict


@pytest.fixture()
def conn(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    conn = connect_db(parse_database_config(str(tmp_path / "db.sqlite")))
    conn.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY AUTOINCREMENT, body TEXT NOT NULL)")
    conn.commit()
    yield conn
    conn.close()


def _bodies(conn):
    return [row["body"] for row in conn.execute("SELECT body FROM notes ORDER BY id").fetchall()]


def test_atomic_commits_block(conn):
    with conn.atomic():
        conn.execute("INSERT INTO notes (body) VALUES (?)", ("rent",))
        conn.execute("INSERT INTO notes (body) VALUES (?)", ("food",))

    conn.rollback()
    assert _bodies(conn) == ["rent", "food"]


def test_atomic_rolls_back_and_reraises(conn):
    with pytest.raises(RuntimeError, match="disk full"):
        with conn.atomic():
            conn.execute("INSERT INTO notes (body) VALUES (?)", ("rent",))
            raise RuntimeError("disk full")

    assert _bodies(conn) == []


def test_executemany_returns_row_count(conn):
    assert conn.executemany("INSERT INTO notes (body) VALUES (?)", (["a"], ["b"], ["c"])) == 3
    assert conn.executemany("INSERT INTO notes (body) VALUES (?)", iter([])) == 0
    assert _bodies(conn) == ["a", "b", "c"]
    assert conn.last_insert_id() == 3


class _FakeDriverCursor:
    def __init__(self, log):
        self.log = log

    def executemany(self, sql, batch):
        self.log.append((sql, batch))


class _FakeDriver:
    def __init__(self):
        self.log = []

    def cursor(self):
        return _FakeDriverCursor(self.log)


def test_executemany_rewrites_placeholders_once_for_postgres():
    driver = _FakeDriver()
    conn = BudgetConnection(driver, "postgres")

    sent = conn.executemany("INSERT INTO notes (id, body) VALUES (?, ?)", ([1, "a"], [2, "b"]))

    assert sent == 2
    assert driver.log == [("INSERT INTO notes (id, body) VALUES (%s, %s)", [(1, "a"), (2, "b")])]


def test_result_row_reads_like_sqlite_row():
    row = ResultRow(["id", "body"], (7, "rent"))

    assert row["body"] == "rent"
    assert row[0] == 7
    assert list(row) == [7, "rent"]
    assert len(row) == 2
    assert row_to_dict(row) == {"id": 7, "body": "rent"}
    assert row_to_dict(None) is None
