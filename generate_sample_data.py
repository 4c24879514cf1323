import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from household_budget import create_app, storage
from household_budget.csv_import import format_minor_units
from household_budget.importer import import_csv_file
from household_budget.rules import normalize_rule_payload


MERCHANTS = [
    ("ICA Supermarket", "Mat", "Livsmedel", (-1200, -80)),
    ("SL Access", "Transport", "Kollektivtrafik", (-950, -40)),
    ("Vattenfall", "Boende", "El", (-900, -300)),
    ("Spotify", "Nöje", "Streaming", (-120, -110)),
]


def build_bank_file(start, days, opening_balance):
    balance = opening_balance
    rows = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        merchant, category, sub_category, (low, high) = random.choice(MERCHANTS)
        amount = random.randint(low * 100, high * 100)
        balance += amount
        rows.append([day.isoformat(), merchant, format_minor_units(amount).replace(".", ","),
                     format_minor_units(balance).replace(".", ","), category, sub_category])
        if day.day == 25:
            balance += 3200000
            rows.append([day.isoformat(), "Lön", "32000,00", format_minor_units(balance).replace(".", ","),
                         "Inkomst", "Lön"])

    lines = ["Datum;Beskrivning;Belopp;Saldo;Kategori;Underkategori"]
    # Bank exports list the newest rows first.
    lines.extend(";".join(row) for row in reversed(rows))
    return "\n".join(lines) + "\n"


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        user_id = storage.create_user(db, "demo", generate_password_hash("demo123"))
        checking = storage.create_account(db, user_id, "Lönekonto")
        storage.create_account(db, user_id, "Sparkonto", account_type="savings")

        food = storage.create_main_category(db, user_id, "Mat")
        storage.create_sub_category(db, user_id, food["id"], "Livsmedel")
        transport = storage.create_main_category(db, user_id, "Transport")
        public_transport = storage.create_sub_category(db, user_id, transport["id"], "Kollektivtrafik")
        storage.create_rule(
            db,
            user_id,
            normalize_rule_payload(
                {
                    "condition_type": "textStartsWith",
                    "condition_value": "SL ",
                    "main_category_id": transport["id"],
                    "sub_category_id": public_transport["id"],
                    "negative_transaction_type": "Transaction",
                }
            ),
        )
        db.commit()

        content = build_bank_file(date.today() - timedelta(days=90), 90, 1500000)
        stats = import_csv_file(db, user_id, content, file_source="sample.csv", account_id=checking["id"])

    print(f"Sample data generated ({stats['created']} transactions). Login with demo / demo123")


if __name__ == "__main__":
    main()
