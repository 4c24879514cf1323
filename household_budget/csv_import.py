import csv
import hashlib
import io
import logging
import math
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .errors import CsvFormatError, ValidationError


logger = logging.getLogger(__name__)

MAPPING_FIELDS = (
    "date",
    "description",
    "amount",
    "balance",
    "bank_category",
    "bank_sub_category",
    "bank_status",
)
REQUIRED_MAPPING_FIELDS = ("date", "description", "amount")

# Sub category keywords must be tried before category ones: "underkategori" contains "kategori".
COLUMN_KEYWORDS = [
    ("bank_sub_category", ["underkategori", "subcategory", "sub category"]),
    ("bank_category", ["kategori", "category"]),
    ("date", ["datum", "date"]),
    ("amount", ["belopp", "amount"]),
    ("balance", ["saldo", "balance"]),
    ("description", ["beskrivning", "text", "description"]),
    ("bank_status", ["status"]),
]
MOJIBAKE_FIXES = {
    "Ã¥": "å",
    "Ã¤": "ä",
    "Ã¶": "ö",
    "Ã…": "Å",
    "Ã„": "Ä",
    "Ã–": "Ö",
}
DATE_FORMATS = ["%Y-%m-%d", "%Y/%m/%d", "%d.%m.%Y"]
TRANSFER_MARKERS = ["överföring", "transfer"]
XLSX_EXTENSIONS = (".xlsx", ".xlsm")
ZIP_MAGIC = b"PK\x03\x04"


def normalize_header_name(value):
    return " ".join((value or "").strip().lower().split())


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def clean_csv_content(text):
    cleaned = (text or "").replace("\ufeff", "").replace("\ufffd", "")
    for broken, fixed in MOJIBAKE_FIXES.items():
        cleaned = cleaned.replace(broken, fixed)
    return cleaned


def sniff_delimiter(text):
    first_line = next((line for line in (text or "").splitlines() if line.strip()), "")
    counts = {delimiter: first_line.count(delimiter) for delimiter in (";", ",", "\t")}
    best = max(counts, key=counts.get)
    return best if counts[best] > 0 else ";"


def read_csv_rows(text):
    reader = csv.reader(io.StringIO(text or ""), delimiter=sniff_delimiter(text))
    return [row for row in reader if any(cell.strip() for cell in row)]


def is_xlsx_file(file_name, content):
    if not isinstance(content, (bytes, bytearray)):
        return False
    return (file_name or "").lower().endswith(XLSX_EXTENSIONS) or bytes(content[:4]) == ZIP_MAGIC


def _cell_text(value):
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        return format(Decimal(str(value)), "f")
    return str(value)


def read_xlsx_rows(file_bytes):
    """Read the first sheet of an Excel export as text rows, like ``read_csv_rows``.

    Dates become ISO strings and numbers keep a plain decimal form, so the rows
    go through the same mapping and parsing as a CSV file.
    """
    try:
        workbook = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except (BadZipFile, InvalidFileException, KeyError, OSError) as exc:
        raise CsvFormatError("Could not read the workbook. Save it as .xlsx or CSV and try again.") from exc

    try:
        sheet = workbook.worksheets[0]
        rows = []
        for values in sheet.iter_rows(values_only=True):
            cells = [_cell_text(value).strip() for value in values]
            if any(cells):
                rows.append(cells)
    finally:
        workbook.close()

    width = max((len(row) for row in rows), default=0)
    logger.debug("Read %s rows from sheet %r", len(rows), sheet.title)
    return [row + [""] * (width - len(row)) for row in rows]


def build_file_fingerprint(header_row):
    cleaned_header = [normalize_header_name(cell) for cell in (header_row or [])]
    return hashlib.sha256("|".join(cleaned_header).encode("utf-8")).hexdigest()


def empty_mapping():
    return {field: "" for field in MAPPING_FIELDS}


def detect_column_mapping(header_row):
    mapping = empty_mapping()
    used_columns = set()
    headers = [normalize_header_name(cell) for cell in (header_row or [])]
    for field, keywords in COLUMN_KEYWORDS:
        for idx, header in enumerate(headers):
            if idx in used_columns:
                continue
            if any(keyword in header for keyword in keywords):
                mapping[field] = str(idx)
                used_columns.add(idx)
                break
    return mapping


def mapping_from_payload(payload):
    mapping = empty_mapping()
    for field in MAPPING_FIELDS:
        value = (payload or {}).get(field, "")
        mapping[field] = "" if value is None else str(value).strip()
    return mapping


def validate_mapping(mapping, header_row):
    column_count = len(header_row or [])
    missing = []
    for field in REQUIRED_MAPPING_FIELDS:
        column = mapping.get(field, "")
        if not column.isdigit() or int(column) >= column_count:
            missing.append(field)
    if missing:
        raise CsvFormatError(
            f"Could not find columns for: {', '.join(missing)}. Provide a column mapping.",
            headers=header_row,
        )


def parse_amount(value):
    text = re.sub(r"\s", "", value or "")
    text = text.replace("\u2212", "-").replace("kr", "").replace("SEK", "").replace("$", "")
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if tail.isdigit() and len(tail) <= 2:
            text = f"{head.replace(',', '')}.{tail}"
        else:
            text = text.replace(",", "")

    try:
        amount = float(text)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return -abs(amount) if negative else amount


def to_minor_units(value):
    try:
        decimal_value = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    return int((decimal_value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_minor_units(value):
    if value is None:
        return ""
    return str(Decimal(int(value)).scaleb(-2))


def parse_bank_date(value):
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    cleaned = cleaned.split("T")[0].split(" ")[0]
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        if 1900 <= parsed.year <= 2100:
            return parsed.date().isoformat()
        return None
    return None


def is_internal_transfer_category(bank_category, bank_sub_category=""):
    for value in (bank_category, bank_sub_category):
        lowered = (value or "").lower()
        if any(marker in lowered for marker in TRANSFER_MARKERS):
            return True
    return False


def build_parsed_transaction(row_index, account_id, file_source, date, description, amount, balance=None,
                             bank_category="", bank_sub_category="", bank_status=""):
    return {
        "row_index": row_index,
        "account_id": account_id,
        "date": date,
        "description": description,
        "amount": amount,
        "balance_after": balance,
        "bank_category": bank_category,
        "bank_sub_category": bank_sub_category,
        "bank_status": bank_status,
        "type": "InternalTransfer" if is_internal_transfer_category(bank_category, bank_sub_category) else "Transaction",
        "status": "red",
        "file_source": file_source,
    }


def parse_csv_rows(rows, account_id, file_source, mapping=None):
    """Turn raw CSV rows (header first) into parsed transactions.

    Returns ``(transactions, skipped_rows, mapping)``. Rows shorter than the
    header or with an unreadable date or amount are skipped and counted.
    """
    if not rows:
        return [], 0, mapping or empty_mapping()

    header_row = [cell.strip() for cell in rows[0]]
    mapping = mapping_from_payload(mapping) if mapping else detect_column_mapping(header_row)
    validate_mapping(mapping, header_row)

    parsed_rows = []
    skipped_rows = 0
    for row_index, raw_row in enumerate(rows[1:], start=1):
        if len(raw_row) < len(header_row):
            skipped_rows += 1
            continue
        row = [cell.strip() for cell in raw_row]

        def get_value(field):
            column = mapping.get(field, "")
            if not column.isdigit():
                return ""
            idx = int(column)
            return row[idx] if idx < len(row) else ""

        parsed_date = parse_bank_date(get_value("date"))
        amount = parse_amount(get_value("amount"))
        if parsed_date is None or amount is None:
            skipped_rows += 1
            continue

        balance = parse_amount(get_value("balance"))
        parsed_rows.append(
            build_parsed_transaction(
                row_index,
                account_id,
                file_source,
                parsed_date,
                get_value("description"),
                to_minor_units(amount),
                balance=to_minor_units(balance) if balance is not None else None,
                bank_category=get_value("bank_category"),
                bank_sub_category=get_value("bank_sub_category"),
                bank_status=get_value("bank_status"),
            )
        )

    logger.info("Parsed %s rows from %s (%s skipped)", len(parsed_rows), file_source, skipped_rows)
    return parsed_rows, skipped_rows, mapping


def parse_csv_content(text, account_id, file_source, mapping=None):
    return parse_csv_rows(read_csv_rows(clean_csv_content(text)), account_id, file_source, mapping=mapping)


def _optional_int(payload, field):
    value = payload.get(field)
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer amount in minor units.")
    return value


def normalize_incoming_row(payload, account_id, file_source, row_index=0):
    if not isinstance(payload, dict):
        raise ValidationError("Each transaction must be an object.")
    parsed_date = parse_bank_date(str(payload.get("date") or ""))
    if parsed_date is None:
        raise ValidationError(f"Row {row_index}: invalid date {payload.get('date')!r}.")
    amount = _optional_int(payload, "amount")
    if amount is None:
        raise ValidationError(f"Row {row_index}: amount is required.")
    return build_parsed_transaction(
        row_index,
        account_id,
        payload.get("file_source") or file_source,
        parsed_date,
        (payload.get("description") or "").strip(),
        amount,
        balance=_optional_int(payload, "balance_after"),
        bank_category=(payload.get("bank_category") or "").strip(),
        bank_sub_category=(payload.get("bank_sub_category") or "").strip(),
        bank_status=(payload.get("bank_status") or "").strip(),
    )
