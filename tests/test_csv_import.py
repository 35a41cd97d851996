import io
from datetime import date, datetime
from decimal import Decimal

import pytest
from openpyxl import Workbook

from cointrail.models.enums import MappedField, TransactionType
from cointrail.services.csv_import import (
    infer_mapping,
    is_mapping_valid,
    missing_fields,
    parse_amount,
    parse_date,
)

CSV_TEXT = (
    "Date,Description,Category,Type,Amount,Notes\n"
    "2025-07-30,Groceries,Food,expense,2500,weekly shop\n"
    "\n"
    "07/29/2025,Monthly Salary,Salary,income,\"50,000\",\n"
    "2025-07-28,Coffee,food,expense,3.50,\n"
    "2025-07-27,,Food,expense,12,\n"
    "2025-07-26,Refund,Food,expense,-4,\n"
    "not a date,Taxi,Transport,expense,20,\n"
    "2025-07-25,Gift,Gifts,transfer,20,\n"
)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "text, expected",
    [
        ("2025-07-30", date(2025, 7, 30)),
        ("2025-07-30T10:15:00Z", date(2025, 7, 30)),
        ("2025/07/30", date(2025, 7, 30)),
        ("07/30/2025", date(2025, 7, 30)),
        ("30/07/2025", date(2025, 7, 30)),
        ("05/06/2025", date(2025, 5, 6)),
        ("30-07-2025", date(2025, 7, 30)),
        ("07-30-2025", date(2025, 7, 30)),
        ("  2025-07-30 ", date(2025, 7, 30)),
    ],
)
def test_parse_date_formats(text, expected):
    assert parse_date(text) == expected


@pytest.mark.parametrize("text", ["", "yesterday", "2025-13-45", None])
def test_parse_date_rejects(text):
    assert parse_date(text) is None


def test_parse_amount_strips_noise():
    assert parse_amount("$1,234.50") == Decimal("1234.50")
    assert parse_amount(" 12 ") == Decimal("12")
    assert parse_amount("-4") == Decimal("-4")
    assert parse_amount("abc") is None
    assert parse_amount("1.2.3") is None
    assert parse_amount(None) is None
    assert parse_amount("€ 2,500.00") == Decimal("2500.00")


@pytest.mark.parametrize("text", ["abc12", "12abc", "(12.50)", "USD 10", "1_000", "NaN"])
def test_parse_amount_rejects_text(text):
    assert parse_amount(text) is None


def test_parse_amount_expands_exponent():
    amount = parse_amount("1e5")
    assert amount == Decimal("100000")
    assert str(amount) == "100000"


def test_infer_mapping_heuristic():
    mapping = infer_mapping(
        ["Transaction Date", "Desc", "Amount (USD)", "Type", "Category", "Notes", "Ref"],
    )
    assert mapping == {
        "Transaction Date": MappedField.DATE,
        "Desc": MappedField.DESCRIPTION,
        "Amount (USD)": MappedField.AMOUNT,
        "Type": MappedField.TYPE,
        "Category": MappedField.CATEGORY,
        "Notes": MappedField.NOTES,
        "Ref": MappedField.IGNORE,
    }
    assert is_mapping_valid(mapping)


def test_missing_fields_are_reported():
    mapping = {"when": MappedField.DATE, "what": MappedField.DESCRIPTION}
    assert not is_mapping_valid(mapping)
    assert missing_fields(mapping) == [
        MappedField.AMOUNT, MappedField.TYPE, MappedField.CATEGORY,
    ]


# ---------------------------------------------------------------------------
# Reading files
# ---------------------------------------------------------------------------

def test_read_csv_skips_blank_lines_and_bom(services):
    importer = services["import_service"]
    table = importer.read_table(("\ufeff" + CSV_TEXT).encode("utf-8"), filename="bank.csv")
    assert table.headers[0] == "Date"
    assert len(table) == 7
    assert table.rows[1]["Amount"] == "50,000"


def test_read_csv_from_path(services, tmp_path):
    path = tmp_path / "bank.csv"
    path.write_text(CSV_TEXT, encoding="utf-8")
    table = services["import_service"].read_table(path)
    assert len(table.rows) == 7


def test_read_empty_file_raises(services):
    with pytest.raises(ValueError):
        services["import_service"].read_table(b"", filename="empty.csv")


def test_read_xlsx(services):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Date", "Description", "Category", "Type", "Amount"])
    sheet.append([datetime(2025, 7, 30), "Groceries", "Food", "expense", 2500])
    sheet.append([None, None, None, None, None])
    sheet.append(["2025-07-29", "Lunch", "Food", "expense", 12.5])
    buffer = io.BytesIO()
    workbook.save(buffer)

    table = services["import_service"].read_table(buffer.getvalue(), filename="bank.xlsx")
    assert table.headers == ["Date", "Description", "Category", "Type", "Amount"]
    assert len(table) == 2
    assert table.rows[0]["Date"] == "2025-07-30"
    assert table.rows[0]["Amount"] == "2500"
    assert table.rows[1]["Amount"] == "12.5"


def test_preview_limits_rows(services):
    importer = services["import_service"]
    table = importer.read_table(CSV_TEXT.encode("utf-8"), filename="bank.csv")
    preview = importer.preview(table)
    assert preview.total_rows == 7
    assert len(preview.rows) == 5
    assert preview.missing_fields == []


# ---------------------------------------------------------------------------
# Importing
# ---------------------------------------------------------------------------

def test_import_creates_missing_categories_and_skips_invalid_rows(services, fake_supabase):
    categories = services["category_service"]
    assert categories.add("Food", TransactionType.EXPENSE).success

    importer = services["import_service"]
    table = importer.read_table(CSV_TEXT.encode("utf-8"), filename="bank.csv")
    result = importer.import_transactions(table)

    assert result.success
    assert result.status_code == 201
    assert result.data.imported == 3
    assert result.data.skipped == 4
    assert result.data.skipped_rows == [4, 5, 6, 7]
    # "food" matched the existing "Food" category case-insensitively.
    assert result.data.categories_created == 1
    assert result.data.message == "Import complete! 3 transactions added, 4 skipped."

    names = sorted(c["name"] for c in fake_supabase.tables["categories"])
    assert names == ["Food", "Salary"]

    store = services["transaction_store"]
    assert len(store.transactions) == 3
    salary = next(t for t in store.transactions if t.description == "Monthly Salary")
    assert salary.amount == Decimal("50000")
    assert salary.type == TransactionType.INCOME
    assert salary.transaction_date == date(2025, 7, 29)
    groceries = next(t for t in store.transactions if t.description == "Groceries")
    assert groceries.notes == "weekly shop"


def test_import_remembers_mapping(services):
    importer = services["import_service"]
    csv_text = "When,What,Cat,Kind,Value\n2025-07-30,Bus,Transport,expense,2\n"
    table = importer.read_table(csv_text.encode("utf-8"), filename="odd.csv")
    mapping = {
        "When": MappedField.DATE,
        "What": MappedField.DESCRIPTION,
        "Cat": MappedField.CATEGORY,
        "Kind": MappedField.TYPE,
        "Value": MappedField.AMOUNT,
    }
    assert importer.import_transactions(table, mapping).success
    assert importer.suggest_mapping(table.headers) == mapping


def test_import_rejects_incomplete_mapping(services):
    importer = services["import_service"]
    table = importer.read_table(CSV_TEXT.encode("utf-8"), filename="bank.csv")
    result = importer.import_transactions(table, {"Date": MappedField.DATE})
    assert not result.success
    assert result.status_code == 400


def test_import_backend_failure_is_reported(services, fake_supabase):
    importer = services["import_service"]
    table = importer.read_table(CSV_TEXT.encode("utf-8"), filename="bank.csv")
    fake_supabase.fail("transactions")
    result = importer.import_transactions(table)
    assert not result.success
    assert result.status_code == 502


def test_import_requires_login(services, session):
    session.clear()
    importer = services["import_service"]
    table = importer.read_table(CSV_TEXT.encode("utf-8"), filename="bank.csv")
    assert importer.import_transactions(table).status_code == 401


def test_sample_csv(services):
    filename, text = services["import_service"].sample_csv()
    assert filename == "cointrail_sample.csv"
    lines = text.splitlines()
    assert lines[0] == "date,description,category,type,amount"
    assert lines[1] == "2025-07-30,Groceries,Food,expense,2500"
    assert lines[2] == "2025-07-29,Monthly Salary,Salary,income,50000"
    assert is_mapping_valid(infer_mapping(lines[0].split(",")))
