import logging
from datetime import date

from . import storage
from .budget import DEFAULT_PAYDAY, opening_balance_updates
from .csv_import import (
    build_file_fingerprint,
    clean_csv_content,
    decode_csv_bytes,
    is_xlsx_file,
    parse_csv_rows,
    read_csv_rows,
    read_xlsx_rows,
)
from .errors import CsvFormatError, ImportFailedError
from .linking import auto_match_transfers
from .reconcile import plan_import, summarize_plan


logger = logging.getLogger(__name__)

DEFAULT_MAX_IMPORT_ROWS = 5000


def ensure_account(db, user_id, account_id=None, account_name=None):
    """Return the target account, creating it when the file names a new one."""
    if account_id:
        account = storage.get_account(db, user_id, account_id)
        if account is not None:
            return account
    if account_name:
        account = storage.get_account_by_name(db, user_id, account_name)
        if account is not None:
            return account
    name = account_name or account_id
    if not name:
        raise CsvFormatError("An account_id or account_name is required to import transactions.")
    logger.info("Creating account %r for user %s during import", name, user_id)
    return storage.create_account(db, user_id, name)


def read_import_file(db, user_id, content, account_id, file_source, mapping=None):
    """Decode and parse a bank file (CSV text or an .xlsx workbook), recalling a saved column mapping.

    Returns ``(parsed_rows, skipped, mapping, fingerprint)``.
    """
    if is_xlsx_file(file_source, content):
        rows = read_xlsx_rows(content)
    else:
        text = content if isinstance(content, str) else decode_csv_bytes(content)
        if text is None:
            raise CsvFormatError("Could not decode file. Save it as UTF-8 or Latin-1 and try again.")
        rows = read_csv_rows(clean_csv_content(text))
    if not rows:
        raise CsvFormatError("The file is empty.")

    fingerprint = build_file_fingerprint(rows[0])
    if mapping is None:
        mapping = storage.get_csv_mapping(db, user_id, fingerprint)
    parsed, skipped, used_mapping = parse_csv_rows(rows, account_id, file_source, mapping=mapping)
    if not parsed:
        raise CsvFormatError("No transactions found in file.", headers=rows[0])
    return parsed, skipped, used_mapping, fingerprint


def run_transfer_matching(db, user_id):
    accounts = storage.list_accounts(db, user_id)
    transactions = storage.list_transactions(db, user_id)
    changed, pairs = auto_match_transfers(
        transactions,
        [account["id"] for account in accounts],
        {account["id"]: account["name"] for account in accounts},
    )
    if changed:
        storage.update_transactions(db, user_id, changed)
    return changed, pairs


def apply_opening_balances(db, user_id, account_id, transactions, payday, today, auto_update_balance):
    updates = opening_balance_updates(transactions, account_id, payday=payday, today=today)
    for update in updates:
        storage.upsert_balance_post(
            db,
            user_id,
            account_id,
            update["month_key"],
            update["balance"],
            update_user_balance=auto_update_balance,
        )
    return updates


def _settings_value(settings, key, default):
    value = settings.get(key)
    return default if value is None else value


def synchronize_rows(db, user_id, account, parsed, file_source, skipped=0, today=None, settings=None,
                     dry_run=False):
    """Plan and write already parsed rows for one account.

    The plan is written in one database transaction; on failure everything is
    rolled back and :class:`ImportFailedError` is raised. Transfer matching
    and the opening balance update run afterwards and never fail the import.
    """
    settings = settings or storage.get_settings(db, user_id)
    payday = int(_settings_value(settings, "payday", DEFAULT_PAYDAY))
    auto_update_balance = bool(_settings_value(settings, "autoUpdateBalance", True))

    rules = storage.list_rules(db, user_id)
    categories = storage.list_categories(db, user_id)
    existing = storage.list_transactions(db, user_id, account_id=account["id"])
    plan = plan_import(parsed, existing, account["id"], rules=rules, categories=categories)

    stats = summarize_plan(plan)
    stats.update({"parsed": len(parsed), "skipped": skipped, "transfers_matched": 0, "balances_set": 0})
    if dry_run:
        stats["preview"] = plan["imported"]
        return stats

    run_stats = {key: value for key, value in stats.items() if not key.endswith("_ids")}
    try:
        with db.atomic():
            storage.sync_import_plan(db, user_id, plan)
            stats["import_run_id"] = storage.record_import_run(
                db, user_id, account["id"], file_source, plan["start_date"], plan["end_date"], run_stats
            )
    except Exception as exc:
        logger.exception("Import of %s into account %s failed, rolled back", file_source, account["id"])
        raise ImportFailedError(f"Import failed and was rolled back: {exc}") from exc

    try:
        with db.atomic():
            _changed, pairs = run_transfer_matching(db, user_id)
        stats["transfers_matched"] = len(pairs)
    except Exception as exc:
        logger.warning("Transfer matching after import of %s skipped: %s", file_source, exc)

    try:
        with db.atomic():
            updates = apply_opening_balances(
                db, user_id, account["id"], plan["imported"], payday, today or date.today(), auto_update_balance
            )
        stats["balances_set"] = len(updates)
    except Exception as exc:
        logger.warning("Opening balance update after import of %s skipped: %s", file_source, exc)

    logger.info(
        "Imported %s into account %s: %s created, %s updated, %s deleted, %s kept",
        file_source,
        account["id"],
        stats["created"],
        stats["updated"],
        stats["deleted"],
        stats["kept"],
    )
    return stats


def import_csv_file(db, user_id, content, file_source="import.csv", account_id=None, account_name=None,
                    mapping=None, today=None, settings=None, max_rows=DEFAULT_MAX_IMPORT_ROWS, dry_run=False):
    try:
        account = ensure_account(db, user_id, account_id, account_name)
        parsed, skipped, used_mapping, fingerprint = read_import_file(
            db, user_id, content, account["id"], file_source, mapping=mapping
        )
        if max_rows and len(parsed) > max_rows:
            raise CsvFormatError(f"The file has {len(parsed)} transactions, the limit is {max_rows}.")
    except CsvFormatError:
        db.rollback()
        raise

    if dry_run:
        stats = synchronize_rows(
            db, user_id, account, parsed, file_source, skipped=skipped, today=today, settings=settings, dry_run=True
        )
        db.rollback()
    else:
        storage.save_csv_mapping(db, user_id, fingerprint, used_mapping)
        stats = synchronize_rows(db, user_id, account, parsed, file_source, skipped=skipped, today=today,
                                 settings=settings)
    stats["mapping"] = used_mapping
    stats["account"] = account
    return stats
