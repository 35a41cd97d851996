import csv
import io
from datetime import date

import pytest
from openpyxl import load_workbook

from cointrail.models.enums import ExportFormat, TransactionType


@pytest.fixture
def populated(services):
    categories = services["category_service"]
    store = services["transaction_store"]
    food = categories.add("Food", TransactionType.EXPENSE).data
    salary = categories.add("Salary", TransactionType.INCOME).data
    store.add({
        "amount": "2500", "description": "Groceries", "category_id": food.id,
        "transaction_date": date(2025, 7, 30), "type": TransactionType.EXPENSE,
        "notes": "weekly",
    })
    store.add({
        "amount": "50000", "description": "Monthly Salary", "category_id": salary.id,
        "transaction_date": date(2025, 7, 29), "type": TransactionType.INCOME,
    })
    store.add({
        "amount": "10", "description": "Old", "category_id": food.id,
        "transaction_date": date(2025, 1, 2), "type": TransactionType.EXPENSE,
    })
    return services


def _rows(content: bytes) -> list[list[str]]:
    return list(csv.reader(io.StringIO(content.decode("utf-8"))))


def test_csv_export(populated):
    result = populated["export_service"].export(today=date(2025, 7, 31))

    assert result.success
    export = result.data
    assert export.filename == "cointrail-export-2025-07-31.csv"
    assert export.row_count == 3
    rows = _rows(export.content)
    assert rows[0] == ["Date", "Description", "Category", "Type", "Amount", "Notes"]
    groceries = next(r for r in rows if r[1] == "Groceries")
    assert groceries == ["2025-07-30", "Groceries", "Food", "expense", "2500", "weekly"]
    salary = next(r for r in rows if r[1] == "Monthly Salary")
    assert salary[5] == ""


def test_export_date_range(populated):
    result = populated["export_service"].export(
        "csv", start=date(2025, 7, 1), end=date(2025, 7, 31),
    )
    assert result.data.row_count == 2
    assert all(r[0].startswith("2025-07") for r in _rows(result.data.content)[1:])


def test_missing_category_exported_as_na(populated):
    categories = populated["category_service"]
    salary = categories.find("Salary", TransactionType.INCOME)
    categories.delete(salary.id)

    rows = _rows(populated["export_service"].export().data.content)
    assert next(r for r in rows if r[1] == "Monthly Salary")[2] == "N/A"


def test_xlsx_export(populated):
    result = populated["export_service"].export(ExportFormat.XLSX, today=date(2025, 7, 31))

    assert result.data.filename == "cointrail-export-2025-07-31.xlsx"
    workbook = load_workbook(io.BytesIO(result.data.content))
    sheet = workbook["Transactions"]
    values = list(sheet.iter_rows(values_only=True))
    assert values[0] == ("Date", "Description", "Category", "Type", "Amount", "Notes")
    assert len(values) == 4
    assert ("2025-07-30", "Groceries", "Food", "expense", 2500, "weekly") in values


def test_xlsx_keeps_formula_like_text_as_string(services):
    food = services["category_service"].add("Food", TransactionType.EXPENSE).data
    services["transaction_store"].add({
        "amount": "5", "description": "=1+1", "category_id": food.id,
        "transaction_date": date(2025, 7, 30), "type": TransactionType.EXPENSE,
        "notes": "=HYPERLINK(\"http://example.com\")",
    })

    result = services["export_service"].export(ExportFormat.XLSX)
    sheet = load_workbook(io.BytesIO(result.data.content))["Transactions"]

    description, notes = sheet["B2"], sheet["F2"]
    assert description.value == "=1+1"
    assert description.data_type == "s"
    assert notes.data_type == "s"
    assert sheet["E2"].value == 5


def test_empty_export(services):
    result = services["export_service"].export()
    assert not result.success
    assert result.error == "No transactions to export."


def test_invalid_arguments(populated):
    exporter = populated["export_service"]
    assert exporter.export("pdf").status_code == 400
    assert exporter.export(start=date(2025, 8, 1), end=date(2025, 7, 1)).status_code == 400
