import csv
import io
import json
import os
from functools import wraps

from flask import Flask, Response, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from . import storage
from .budget import (
    DEFAULT_PAYDAY,
    get_date_range_for_month,
    internal_transfer_summary,
    normalize_planned_transfer,
    parse_month_key,
    planned_transfer_amount,
)
from .csv_import import format_minor_units, normalize_incoming_row
from .db import DB_ERRORS, INTEGRITY_ERRORS, connect_db, describe_database, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .errors import CsvFormatError, DatabaseInitError, ImportFailedError, LinkError, ValidationError
from .importer import import_csv_file, run_transfer_matching, synchronize_rows
from .linking import (
    apply_transaction_update,
    link_expense_and_coverage,
    link_savings,
    match_internal_transfer,
    previous_partners,
)
from .rules import apply_rules_to_stored, determine_transaction_status, normalize_rule_payload


SETTING_KEYS = ("payday", "autoUpdateBalance")


def validate_setting(key, value):
    if key == "payday":
        if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 28:
            raise ValidationError("payday must be a day of month between 1 and 28.")
        return value
    if key == "autoUpdateBalance":
        if not isinstance(value, bool):
            raise ValidationError("autoUpdateBalance must be true or false.")
        return value
    raise ValidationError(f"Unknown setting {key!r}. Known settings: {', '.join(SETTING_KEYS)}.")


def json_payload():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object.")
    return payload


def not_found(what):
    return jsonify({"error": f"{what} not found."}), 404


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "household_budget.sqlite"),
        DEFAULT_PAYDAY=DEFAULT_PAYDAY,
        AUTO_UPDATE_BALANCE=True,
        MAX_IMPORT_ROWS=5000,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            config = database_config()
            try:
                g.db = connect_db(config)
            except DB_ERRORS + (RuntimeError, OSError) as exc:
                message = f"Unable to open {describe_database(config)}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = database_config()
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize {describe_database(config)}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def current_settings(db):
        return storage.get_settings(
            db,
            g.user["id"],
            defaults={"payday": app.config["DEFAULT_PAYDAY"], "autoUpdateBalance": app.config["AUTO_UPDATE_BALANCE"]},
        )

    def current_payday(db):
        return int(current_settings(db)["payday"])

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.errorhandler(ValidationError)
    @app.errorhandler(LinkError)
    def handle_bad_request(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(CsvFormatError)
    def handle_csv_error(exc):
        return jsonify({"error": str(exc), "headers": exc.headers}), 400

    @app.errorhandler(ImportFailedError)
    @app.errorhandler(DatabaseInitError)
    def handle_server_error(exc):
        return jsonify({"error": str(exc)}), 500

    @app.get("/health")
    def health():
        return jsonify({"ok": app.config.get("DB_INIT_ERROR") is None})

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DB_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Authentication required."}), 401
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if request.endpoint in ("health", "db_health"):
            return None
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        g.user = storage.get_user(get_db(), user_id) if user_id is not None else None
        return None

    @app.post("/register")
    def register():
        data = request.get_json(silent=True) or request.form
        username = (data.get("username") or "").strip()
        password = data.get("password") or ""
        if not username:
            raise ValidationError("Username is required.")
        if not password:
            raise ValidationError("Password is required.")

        db = get_db()
        try:
            user_id = storage.create_user(db, username, generate_password_hash(password))
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": "User already exists."}), 409
        app.logger.info("Registered user %s (id=%s)", username, user_id)
        return jsonify({"id": user_id, "username": username}), 201

    @app.post("/login")
    def login():
        data = request.get_json(silent=True) or request.form
        username = (data.get("username") or "").strip()
        user = storage.get_user_by_username(get_db(), username)
        if user is None or not check_password_hash(user["password_hash"], data.get("password") or ""):
            return jsonify({"error": "Incorrect username or password."}), 401

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"id": user["id"], "username": user["username"]})

    @app.post("/logout")
    def logout():
        session.clear()
        return jsonify({"ok": True})

    # Accounts

    @app.get("/api/accounts")
    @login_required
    def list_accounts():
        return jsonify(storage.list_accounts(get_db(), g.user["id"]))

    @app.post("/api/accounts")
    @login_required
    def create_account():
        payload = json_payload()
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("Account name is required.")
        start_balance = payload.get("start_balance", 0)
        if isinstance(start_balance, bool) or not isinstance(start_balance, int):
            raise ValidationError("start_balance must be an integer amount in minor units.")

        db = get_db()
        try:
            account = storage.create_account(
                db, g.user["id"], name, account_type=payload.get("account_type") or "checking", start_balance=start_balance
            )
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": f"Account {name!r} already exists."}), 409
        return jsonify(account), 201

    @app.get("/api/accounts/<account_id>")
    @login_required
    def get_account(account_id):
        account = storage.get_account(get_db(), g.user["id"], account_id)
        if account is None:
            return not_found("Account")
        return jsonify(account)

    @app.patch("/api/accounts/<account_id>")
    @login_required
    def update_account(account_id):
        db = get_db()
        if storage.get_account(db, g.user["id"], account_id) is None:
            return not_found("Account")
        payload = json_payload()
        if "name" in payload and not (payload.get("name") or "").strip():
            raise ValidationError("Account name cannot be empty.")
        if "start_balance" in payload and (
            isinstance(payload["start_balance"], bool) or not isinstance(payload["start_balance"], int)
        ):
            raise ValidationError("start_balance must be an integer amount in minor units.")
        try:
            account = storage.update_account(db, g.user["id"], account_id, payload)
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": "An account with that name already exists."}), 409
        return jsonify(account)

    @app.delete("/api/accounts/<account_id>")
    @login_required
    def delete_account(account_id):
        db = get_db()
        if storage.get_account(db, g.user["id"], account_id) is None:
            return not_found("Account")
        if storage.count_account_transactions(db, g.user["id"], account_id):
            return jsonify({"error": "Account still has transactions. Delete them first."}), 409
        storage.delete_account(db, g.user["id"], account_id)
        db.commit()
        return jsonify({"deleted": account_id})

    # Categories

    @app.get("/api/categories")
    @login_required
    def list_categories():
        return jsonify(storage.list_categories(get_db(), g.user["id"]))

    @app.post("/api/categories")
    @login_required
    def create_category():
        name = (json_payload().get("name") or "").strip()
        if not name:
            raise ValidationError("Category name is required.")
        db = get_db()
        try:
            category = storage.create_main_category(db, g.user["id"], name)
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": f"Category {name!r} already exists."}), 409
        return jsonify(category), 201

    @app.delete("/api/categories/<category_id>")
    @login_required
    def delete_category(category_id):
        db = get_db()
        if not storage.delete_main_category(db, g.user["id"], category_id):
            db.rollback()
            return not_found("Category")
        db.commit()
        return jsonify({"deleted": category_id})

    @app.post("/api/categories/<category_id>/subcategories")
    @login_required
    def create_subcategory(category_id):
        name = (json_payload().get("name") or "").strip()
        if not name:
            raise ValidationError("Subcategory name is required.")
        db = get_db()
        if storage.get_main_category(db, g.user["id"], category_id) is None:
            return not_found("Category")
        try:
            subcategory = storage.create_sub_category(db, g.user["id"], category_id, name)
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": f"Subcategory {name!r} already exists."}), 409
        return jsonify(subcategory), 201

    @app.delete("/api/subcategories/<category_id>")
    @login_required
    def delete_subcategory(category_id):
        db = get_db()
        if not storage.delete_sub_category(db, g.user["id"], category_id):
            return not_found("Subcategory")
        db.commit()
        return jsonify({"deleted": category_id})

    # Category rules

    @app.get("/api/category-rules")
    @login_required
    def list_rules():
        return jsonify(storage.list_rules(get_db(), g.user["id"]))

    @app.post("/api/category-rules")
    @login_required
    def create_rule():
        rule = normalize_rule_payload(json_payload())
        db = get_db()
        created = storage.create_rule(db, g.user["id"], rule)
        db.commit()
        return jsonify(created), 201

    @app.patch("/api/category-rules/<rule_id>")
    @login_required
    def update_rule(rule_id):
        db = get_db()
        existing = storage.get_rule(db, g.user["id"], rule_id)
        if existing is None:
            return not_found("Rule")
        rule = normalize_rule_payload(json_payload(), existing=existing)
        updated = storage.update_rule(db, g.user["id"], rule_id, rule)
        db.commit()
        return jsonify(updated)

    @app.delete("/api/category-rules/<rule_id>")
    @login_required
    def delete_rule(rule_id):
        db = get_db()
        if not storage.delete_rule(db, g.user["id"], rule_id):
            return not_found("Rule")
        db.commit()
        return jsonify({"deleted": rule_id})

    @app.post("/api/category-rules/apply")
    @login_required
    def apply_rules():
        payload = request.get_json(silent=True) or {}
        db = get_db()
        transactions = storage.list_transactions(db, g.user["id"], account_id=payload.get("account_id"))
        updates, stats = apply_rules_to_stored(
            transactions, storage.list_rules(db, g.user["id"]), storage.list_categories(db, g.user["id"])
        )
        storage.update_transactions(db, g.user["id"], updates)
        db.commit()
        app.logger.info("Rules re-applied for user %s: %s", g.user["id"], stats)
        return jsonify(stats)

    # Transactions

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        db = get_db()
        start_date = request.args.get("start") or None
        end_date = request.args.get("end") or None
        month = request.args.get("month")
        if month:
            start, end = get_date_range_for_month(month, current_payday(db))
            start_date, end_date = start.isoformat(), end.isoformat()
        return jsonify(
            storage.list_transactions(
                db,
                g.user["id"],
                account_id=request.args.get("account_id") or None,
                start_date=start_date,
                end_date=end_date,
                status=request.args.get("status") or None,
                tx_type=request.args.get("type") or None,
            )
        )

    @app.get("/api/transactions/<transaction_id>")
    @login_required
    def get_transaction(transaction_id):
        tx = storage.get_transaction(get_db(), g.user["id"], transaction_id)
        if tx is None:
            return not_found("Transaction")
        return jsonify(tx)

    @app.patch("/api/transactions/<transaction_id>")
    @login_required
    def update_transaction(transaction_id):
        db = get_db()
        original = storage.get_transaction(db, g.user["id"], transaction_id)
        if original is None:
            return not_found("Transaction")
        linked = None
        if original.get("linked_transaction_id"):
            linked = storage.get_transaction(db, g.user["id"], original["linked_transaction_id"])

        updated, linked_updated = apply_transaction_update(original, json_payload(), linked=linked)
        storage.update_transactions(db, g.user["id"], [tx for tx in (updated, linked_updated) if tx is not None])
        db.commit()
        return jsonify(storage.get_transaction(db, g.user["id"], transaction_id))

    @app.delete("/api/transactions/<transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        db = get_db()
        if not storage.delete_transactions(db, g.user["id"], [transaction_id]):
            return not_found("Transaction")
        db.commit()
        app.logger.info("Deleted transaction %s for user %s", transaction_id, g.user["id"])
        return jsonify({"deleted": 1})

    @app.post("/api/transactions/bulk-delete")
    @login_required
    def bulk_delete_transactions():
        ids = json_payload().get("ids")
        if not isinstance(ids, list) or not ids:
            raise ValidationError("Please select at least one transaction.")
        db = get_db()
        deleted = storage.delete_transactions(db, g.user["id"], [str(tx_id) for tx_id in ids])
        db.commit()
        app.logger.info("Bulk delete for user %s: %s of %s deleted", g.user["id"], deleted, len(ids))
        return jsonify({"deleted": deleted})

    # Import

    def import_request_args():
        upload = request.files.get("file")
        if upload is not None:
            raw_mapping = request.form.get("mapping")
            try:
                mapping = json.loads(raw_mapping) if raw_mapping else None
            except ValueError as exc:
                raise ValidationError("mapping must be a JSON object.") from exc
            return {
                "content": upload.read(),
                "file_source": upload.filename or "import.csv",
                "account_id": request.form.get("account_id") or None,
                "account_name": request.form.get("account_name") or None,
                "mapping": mapping,
            }

        payload = json_payload()
        if not isinstance(payload.get("content"), str) or not payload["content"].strip():
            raise ValidationError("Upload a CSV or Excel file, or send CSV text as content.")
        return {
            "content": payload["content"],
            "file_source": payload.get("file_name") or "import.csv",
            "account_id": payload.get("account_id") or None,
            "account_name": payload.get("account_name") or None,
            "mapping": payload.get("mapping"),
        }

    def run_import(dry_run):
        args = import_request_args()
        if args["mapping"] is not None and not isinstance(args["mapping"], dict):
            raise ValidationError("mapping must be a JSON object.")
        db = get_db()
        return import_csv_file(
            db,
            g.user["id"],
            args["content"],
            file_source=args["file_source"],
            account_id=args["account_id"],
            account_name=args["account_name"],
            mapping=args["mapping"],
            settings=current_settings(db),
            max_rows=app.config["MAX_IMPORT_ROWS"],
            dry_run=dry_run,
        )

    @app.post("/api/import")
    @login_required
    def import_transactions():
        stats = run_import(dry_run=False)
        app.logger.info(
            "Import by user %s into %s: created=%s updated=%s deleted=%s",
            g.user["id"],
            stats["account_id"],
            stats["created"],
            stats["updated"],
            stats["deleted"],
        )
        return jsonify(stats)

    @app.post("/api/import/preview")
    @login_required
    def preview_import():
        return jsonify(run_import(dry_run=True))

    @app.get("/api/import/runs")
    @login_required
    def list_import_runs():
        return jsonify(storage.list_import_runs(get_db(), g.user["id"]))

    @app.post("/api/transactions/synchronize")
    @login_required
    def synchronize_transactions():
        payload = json_payload()
        db = get_db()
        account = storage.get_account(db, g.user["id"], payload.get("account_id"))
        if account is None:
            return not_found("Account")
        rows = payload.get("transactions")
        if not isinstance(rows, list) or not rows:
            raise ValidationError("transactions must be a non-empty list.")
        max_rows = app.config["MAX_IMPORT_ROWS"]
        if max_rows and len(rows) > max_rows:
            raise ValidationError(f"{len(rows)} transactions sent, the limit is {max_rows}.")
        file_source = payload.get("file_source") or "api"
        parsed = [
            normalize_incoming_row(row, account["id"], file_source, row_index=index)
            for index, row in enumerate(rows, start=1)
        ]
        stats = synchronize_rows(db, g.user["id"], account, parsed, file_source, settings=current_settings(db))
        return jsonify(stats)

    # Linking

    def load_transactions(*transaction_ids):
        db = get_db()
        found = [storage.get_transaction(db, g.user["id"], tx_id) for tx_id in transaction_ids]
        if any(tx is None for tx in found):
            return None
        return found

    @app.post("/api/transactions/match-transfer")
    @login_required
    def match_transfer():
        payload = json_payload()
        pair = load_transactions(payload.get("first_id"), payload.get("second_id"))
        if pair is None:
            return not_found("Transaction")
        db = get_db()
        account_names = {account["id"]: account["name"] for account in storage.list_accounts(db, g.user["id"])}
        first, second = match_internal_transfer(pair[0], pair[1], account_names)
        detached = previous_partners(pair, lambda tx_id: storage.get_transaction(db, g.user["id"], tx_id))
        storage.update_transactions(db, g.user["id"], [*detached, first, second])
        db.commit()
        return jsonify([first, second])

    @app.post("/api/transactions/link-expense")
    @login_required
    def link_expense():
        payload = json_payload()
        pair = load_transactions(payload.get("expense_id"), payload.get("coverage_id"))
        if pair is None:
            return not_found("Transaction")
        expense, coverage = link_expense_and_coverage(pair[0], pair[1])
        db = get_db()
        detached = previous_partners(pair, lambda tx_id: storage.get_transaction(db, g.user["id"], tx_id))
        storage.update_transactions(db, g.user["id"], [*detached, expense, coverage])
        db.commit()
        return jsonify({"expense": expense, "coverage": coverage})

    @app.post("/api/transactions/<transaction_id>/link-savings")
    @login_required
    def link_savings_target(transaction_id):
        payload = json_payload()
        found = load_transactions(transaction_id)
        if found is None:
            return not_found("Transaction")
        updated = link_savings(found[0], payload.get("savings_target_id"), payload.get("main_category_id"))
        db = get_db()
        storage.update_transactions(db, g.user["id"], [updated])
        db.commit()
        return jsonify(updated)

    @app.post("/api/transactions/auto-match")
    @login_required
    def auto_match():
        db = get_db()
        changed, pairs = run_transfer_matching(db, g.user["id"])
        db.commit()
        return jsonify({"matched": len(pairs), "changed": len(changed), "pairs": [list(pair) for pair in pairs]})

    @app.post("/api/transactions/recalculate-status")
    @login_required
    def recalculate_status():
        db = get_db()
        changed = []
        for tx in storage.list_transactions(db, g.user["id"]):
            status = determine_transaction_status(tx)
            if status != tx.get("status"):
                changed.append(dict(tx, status=status))
        storage.update_transactions(db, g.user["id"], changed)
        db.commit()
        return jsonify({"updated": len(changed)})

    # Planned transfers and budget

    @app.get("/api/planned-transfers")
    @login_required
    def list_planned_transfers():
        db = get_db()
        payday = current_payday(db)
        transfers = storage.list_planned_transfers(db, g.user["id"], month=request.args.get("month") or None)
        for transfer in transfers:
            transfer["computed_amount"] = planned_transfer_amount(transfer, payday)
        return jsonify(transfers)

    def user_account_ids(db):
        return {account["id"] for account in storage.list_accounts(db, g.user["id"])}

    @app.post("/api/planned-transfers")
    @login_required
    def create_planned_transfer():
        db = get_db()
        transfer = normalize_planned_transfer(json_payload(), user_account_ids(db))
        created = storage.create_planned_transfer(db, g.user["id"], transfer)
        db.commit()
        created["computed_amount"] = planned_transfer_amount(created, current_payday(db))
        return jsonify(created), 201

    @app.patch("/api/planned-transfers/<transfer_id>")
    @login_required
    def update_planned_transfer(transfer_id):
        db = get_db()
        existing = storage.get_planned_transfer(db, g.user["id"], transfer_id)
        if existing is None:
            return not_found("Planned transfer")
        transfer = normalize_planned_transfer(json_payload(), user_account_ids(db), existing=existing)
        updated = storage.update_planned_transfer(db, g.user["id"], transfer_id, transfer)
        db.commit()
        updated["computed_amount"] = planned_transfer_amount(updated, current_payday(db))
        return jsonify(updated)

    @app.delete("/api/planned-transfers/<transfer_id>")
    @login_required
    def delete_planned_transfer(transfer_id):
        db = get_db()
        if not storage.delete_planned_transfer(db, g.user["id"], transfer_id):
            return not_found("Planned transfer")
        db.commit()
        return jsonify({"deleted": transfer_id})

    def required_month():
        month = request.args.get("month") or ""
        parse_month_key(month)
        return month

    @app.get("/api/transfers/summary")
    @login_required
    def transfer_summary():
        month = required_month()
        db = get_db()
        payday = current_payday(db)
        start, end = get_date_range_for_month(month, payday)
        summary = internal_transfer_summary(
            storage.list_transactions(db, g.user["id"], start_date=start.isoformat(), end_date=end.isoformat()),
            storage.list_planned_transfers(db, g.user["id"], month=month),
            storage.list_accounts(db, g.user["id"]),
            month,
            payday,
        )
        return jsonify({"month": month, "start": start.isoformat(), "end": end.isoformat(), "accounts": summary})

    @app.get("/api/budget-posts")
    @login_required
    def list_budget_posts():
        month = required_month()
        return jsonify(storage.list_budget_posts(get_db(), g.user["id"], month))

    # Settings

    @app.get("/api/settings")
    @login_required
    def get_settings():
        return jsonify(current_settings(get_db()))

    @app.put("/api/settings/<key>")
    @login_required
    def put_setting(key):
        payload = json_payload()
        if "value" not in payload:
            raise ValidationError("value is required.")
        value = validate_setting(key, payload["value"])
        db = get_db()
        storage.set_setting(db, g.user["id"], key, value)
        db.commit()
        return jsonify(current_settings(db))

    # Export

    @app.get("/api/export/csv")
    @login_required
    def export_csv():
        db = get_db()
        month = request.args.get("month")
        start_date = end_date = None
        if month:
            start, end = get_date_range_for_month(month, current_payday(db))
            start_date, end_date = start.isoformat(), end.isoformat()
        account_names = {account["id"]: account["name"] for account in storage.list_accounts(db, g.user["id"])}
        rows = storage.list_transactions(
            db, g.user["id"], account_id=request.args.get("account_id") or None, start_date=start_date, end_date=end_date
        )

        output = io.StringIO()
        writer = csv.writer(output, delimiter=";")
        writer.writerow(["date", "account", "description", "amount", "balance", "type", "status"])
        for tx in sorted(rows, key=lambda item: (item["date"], item["id"])):
            writer.writerow(
                [
                    tx["date"],
                    account_names.get(tx["account_id"], ""),
                    tx.get("user_description") or tx["description"],
                    format_minor_units(tx.get("corrected_amount") if tx.get("corrected_amount") is not None else tx["amount"]),
                    format_minor_units(tx.get("balance_after")),
                    tx["type"],
                    tx["status"],
                ]
            )

        return Response(
            output.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename=transactions-{month or 'all'}.csv"},
        )

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
