import calendar
import json
import logging
from collections import defaultdict
from datetime import date, timedelta

from .errors import ValidationError


logger = logging.getLogger(__name__)

DEFAULT_PAYDAY = 25
TRANSFER_TYPES = ("monthly", "daily")
UNKNOWN_ACCOUNT = "Unknown account"


def parse_month_key(month_key):
    try:
        year_text, month_text = (month_key or "").split("-")
        year, month = int(year_text), int(month_text)
    except ValueError as exc:
        raise ValidationError(f"Invalid month {month_key!r}, expected YYYY-MM.") from exc
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month {month_key!r}, expected YYYY-MM.")
    return year, month


def format_month_key(year, month):
    return f"{year:04d}-{month:02d}"


def add_months(month_key, delta):
    year, month = parse_month_key(month_key)
    index = year * 12 + (month - 1) + delta
    return format_month_key(index // 12, index % 12 + 1)


def _clamped_day(year, month, day):
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def get_date_range_for_month(month_key, payday=DEFAULT_PAYDAY):
    """Return the (start, end) dates of a budget month.

    With payday 1 this is the calendar month. Otherwise the period starts on
    the previous month's payday and ends the day before this month's payday.
    """
    year, month = parse_month_key(month_key)
    if payday <= 1:
        return date(year, month, 1), _clamped_day(year, month, 31)
    prev_year, prev_month = parse_month_key(add_months(month_key, -1))
    start = _clamped_day(prev_year, prev_month, payday)
    end = _clamped_day(year, month, payday) - timedelta(days=1)
    return start, end


def month_key_for_date(value, payday=DEFAULT_PAYDAY):
    if isinstance(value, str):
        value = date.fromisoformat(value[:10])
    month_key = format_month_key(value.year, value.month)
    if payday > 1 and value >= _clamped_day(value.year, value.month, payday):
        return add_months(month_key, 1)
    return month_key


def js_weekday(value):
    """Weekday number with Sunday as 0, the way transfer days are stored."""
    return (value.weekday() + 1) % 7


def count_transfer_days(month_key, weekdays, payday=DEFAULT_PAYDAY):
    selected = set(weekdays or [])
    if not selected:
        return 0
    start, end = get_date_range_for_month(month_key, payday)
    count = 0
    current = start
    while current <= end:
        if js_weekday(current) in selected:
            count += 1
        current += timedelta(days=1)
    return count


def planned_transfer_amount(transfer, payday=DEFAULT_PAYDAY):
    if transfer.get("transfer_type") == "daily":
        days = count_transfer_days(transfer["month"], transfer.get("transfer_days"), payday)
        return (transfer.get("daily_amount") or 0) * days
    return transfer.get("amount") or 0


def _account_entry(account_id, account_names):
    return {
        "account_id": account_id,
        "account_name": account_names.get(account_id, UNKNOWN_ACCOUNT),
        "total_in": 0,
        "total_out": 0,
        "incoming": [],
        "outgoing": [],
    }


def internal_transfer_summary(transactions, planned_transfers, accounts, month_key, payday=DEFAULT_PAYDAY):
    """Actual and planned transfers per account for one budget month."""
    start, end = get_date_range_for_month(month_key, payday)
    start_text, end_text = start.isoformat(), end.isoformat()
    account_names = {account["id"]: account["name"] for account in accounts}
    by_id = {tx["id"]: tx for tx in transactions}
    summary = {}

    def entry(account_id):
        if account_id not in summary:
            summary[account_id] = _account_entry(account_id, account_names)
        return summary[account_id]

    for tx in transactions:
        if tx.get("type") != "InternalTransfer":
            continue
        if not start_text <= str(tx.get("date") or "")[:10] <= end_text:
            continue
        partner = by_id.get(tx.get("linked_transaction_id")) if tx.get("linked_transaction_id") else None
        counterpart_id = partner.get("account_id") if partner else None
        amount = tx.get("amount") or 0
        item = {
            "transaction_id": tx["id"],
            "date": tx.get("date"),
            "amount": abs(amount),
            "linked": partner is not None,
            "planned": False,
            "counterpart_account_id": counterpart_id,
            "counterpart_account_name": account_names.get(counterpart_id, UNKNOWN_ACCOUNT),
            "description": tx.get("user_description") or tx.get("description"),
        }
        account = entry(tx.get("account_id"))
        if amount >= 0:
            account["incoming"].append(item)
            account["total_in"] += abs(amount)
        else:
            account["outgoing"].append(item)
            account["total_out"] += abs(amount)

    for transfer in planned_transfers:
        if transfer.get("month") != month_key:
            continue
        amount = planned_transfer_amount(transfer, payday)
        base = {
            "transfer_id": transfer["id"],
            "amount": amount,
            "linked": False,
            "planned": True,
            "description": transfer.get("description"),
        }
        outgoing = entry(transfer["from_account_id"])
        outgoing["outgoing"].append(
            dict(
                base,
                counterpart_account_id=transfer["to_account_id"],
                counterpart_account_name=account_names.get(transfer["to_account_id"], UNKNOWN_ACCOUNT),
            )
        )
        outgoing["total_out"] += amount
        incoming = entry(transfer["to_account_id"])
        incoming["incoming"].append(
            dict(
                base,
                counterpart_account_id=transfer["from_account_id"],
                counterpart_account_name=account_names.get(transfer["from_account_id"], UNKNOWN_ACCOUNT),
            )
        )
        incoming["total_in"] += amount

    return sorted(summary.values(), key=lambda item: item["account_name"])


def opening_balance_updates(transactions, account_id, payday=DEFAULT_PAYDAY, today=None):
    """Opening balances derived from the last bank balance before each payday.

    For every calendar month up to ``today``'s month, the latest row of the
    account dated before the payday that carries a balance sets the opening
    balance of the following month. Rows are expected in file order, newest
    first, so on equal dates the first row wins.
    """
    today = today or date.today()
    current_key = format_month_key(today.year, today.month)
    cutoff_day = payday - 1 if payday > 1 else 31

    by_month = defaultdict(list)
    for tx in transactions:
        if tx.get("account_id") != account_id or tx.get("balance_after") is None:
            continue
        by_month[str(tx["date"])[:7]].append(tx)

    updates = []
    for month_key in sorted(by_month):
        if month_key > current_key:
            continue
        before_payday = [tx for tx in by_month[month_key] if int(str(tx["date"])[8:10]) <= cutoff_day]
        if not before_payday:
            continue
        last_date = max(tx["date"] for tx in before_payday)
        last = next(tx for tx in before_payday if tx["date"] == last_date)
        updates.append(
            {
                "month_key": add_months(month_key, 1),
                "source_month": month_key,
                "account_id": account_id,
                "balance": last["balance_after"],
                "transaction_id": last.get("id"),
                "date": last_date,
            }
        )
    return updates


def _parse_transfer_days(value):
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValidationError("transfer_days must be a list of weekday numbers.") from exc
    if not isinstance(value, list) or not all(isinstance(day, int) and 0 <= day <= 6 for day in value):
        raise ValidationError("transfer_days must be a list of weekday numbers (0 = Sunday).")
    return sorted(set(value))


def _amount(value, field):
    if value is None or value == "":
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer amount in minor units.")
    return value


def normalize_planned_transfer(payload, account_ids, existing=None):
    transfer = dict(existing or {})
    transfer.update({key: value for key, value in (payload or {}).items() if key != "id"})

    from_account = transfer.get("from_account_id")
    to_account = transfer.get("to_account_id")
    if from_account not in account_ids or to_account not in account_ids:
        raise ValidationError("from_account_id and to_account_id must be existing accounts.")
    if from_account == to_account:
        raise ValidationError("A transfer needs two different accounts.")
    parse_month_key(transfer.get("month"))

    transfer_type = transfer.get("transfer_type") or "monthly"
    if transfer_type not in TRANSFER_TYPES:
        raise ValidationError(f"transfer_type must be one of {', '.join(TRANSFER_TYPES)}.")
    transfer_days = _parse_transfer_days(transfer.get("transfer_days"))
    daily_amount = _amount(transfer.get("daily_amount"), "daily_amount")
    if transfer_type == "daily" and not transfer_days:
        raise ValidationError("Daily transfers need at least one transfer day.")

    return {
        "from_account_id": from_account,
        "to_account_id": to_account,
        "amount": _amount(transfer.get("amount"), "amount"),
        "month": transfer["month"],
        "description": (transfer.get("description") or "").strip() or None,
        "transfer_type": transfer_type,
        "daily_amount": daily_amount if transfer_type == "daily" else None,
        "transfer_days": transfer_days,
        "main_category_id": transfer.get("main_category_id") or None,
        "sub_category_id": transfer.get("sub_category_id") or None,
    }
