"""
Bulk Transaction Import.

Reads a CSV or XLSX file, suggests a column mapping, and imports the
rows as transactions in batches.  Categories named in the file that do
not exist yet are created in one batch first.  Rows that cannot be
turned into a valid transaction are skipped and counted; they never
abort the import.
"""

from __future__ import annotations

import csv
import io
import re
import zipfile
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Union

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.config import AppConfig
from cointrail.logger import StructuredLogger
from cointrail.models.category import category_key
from cointrail.models.enums import MappedField, TransactionType
from cointrail.models.service_models import (
    ImportPreview,
    ImportResult,
    ParsedTable,
    ServiceResult,
)
from cointrail.repositories.base_repository import RepositoryError
from cointrail.repositories.transaction_repository import TransactionRepository
from cointrail.services.app_settings_service import AppSettingsService
from cointrail.services.base_service import UserScopedService
from cointrail.services.categories import CategoryService
from cointrail.services.transactions import TransactionStore
from cointrail.utils.audit import log_audit_event
from cointrail.utils.general import JsonValue

REQUIRED_FIELDS: tuple[MappedField, ...] = (
    MappedField.DATE,
    MappedField.DESCRIPTION,
    MappedField.AMOUNT,
    MappedField.TYPE,
    MappedField.CATEGORY,
)

# Checked in order; the first substring found in the lowercased header wins.
_HEADER_HINTS: tuple[tuple[str, MappedField], ...] = (
    ("date", MappedField.DATE),
    ("desc", MappedField.DESCRIPTION),
    ("amount", MappedField.AMOUNT),
    ("type", MappedField.TYPE),
    ("cat", MappedField.CATEGORY),
    ("note", MappedField.NOTES),
)

# Month-first is tried before day-first, so ``05/06/2025`` is May 6th.
_DATE_FORMATS: tuple[str, ...] = (
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
)

_AMOUNT_NOISE_RE: re.Pattern[str] = re.compile(r"[\s,$\u00a2-\u00a5\u20a0-\u20cf]")

SAMPLE_ROWS: list[dict[str, str]] = [
    {
        "date": "2025-07-30",
        "description": "Groceries",
        "category": "Food",
        "type": "expense",
        "amount": "2500",
    },
    {
        "date": "2025-07-29",
        "description": "Monthly Salary",
        "category": "Salary",
        "type": "income",
        "amount": "50000",
    },
]


# ---------------------------------------------------------------------------
# Module-level parsing helpers
# ---------------------------------------------------------------------------

def parse_date(text: Optional[str]) -> Optional[date]:
    """Parse a calendar date in any of the accepted layouts.

    ISO dates and timestamps are tried first, then ``YYYY/MM/DD``,
    ``MM/DD/YYYY``, ``DD/MM/YYYY``, ``DD-MM-YYYY`` and ``MM-DD-YYYY``.
    Returns ``None`` when nothing matches.
    """
    if text is None:
        return None
    value = text.strip()
    if not value:
        return None

    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(text: Optional[str]) -> Optional[Decimal]:
    """Parse an amount, ignoring currency symbols, thousands separators and spaces.

    Any other non-numeric text gives ``None``. Exponent notation such as
    ``1e5`` is accepted and expanded to a plain decimal.
    """
    if text is None:
        return None
    cleaned = _AMOUNT_NOISE_RE.sub("", text)
    if not cleaned or "_" in cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return Decimal(format(amount, "f"))


def parse_type(text: Optional[str]) -> Optional[TransactionType]:
    try:
        return TransactionType((text or "").strip().lower())
    except ValueError:
        return None


def infer_mapping(headers: list[str]) -> dict[str, MappedField]:
    """Guess the target field of every header from its name."""
    mapping: dict[str, MappedField] = {}
    for header in headers:
        lowered = header.lower()
        mapping[header] = next(
            (field for hint, field in _HEADER_HINTS if hint in lowered),
            MappedField.IGNORE,
        )
    return mapping


def missing_fields(mapping: dict[str, MappedField]) -> list[MappedField]:
    mapped = set(mapping.values())
    return [field for field in REQUIRED_FIELDS if field not in mapped]


def is_mapping_valid(mapping: dict[str, MappedField]) -> bool:
    """``True`` when every required field is mapped to some column."""
    return not missing_fields(mapping)


def _field_columns(mapping: dict[str, MappedField]) -> dict[MappedField, str]:
    """Invert *mapping*; when two headers map to one field the last one wins."""
    columns: dict[MappedField, str] = {}
    for header, field in mapping.items():
        if field != MappedField.IGNORE:
            columns[field] = header
    return columns


def _cell_to_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ImportService(UserScopedService):
    """Reads spreadsheets and imports their rows as transactions."""

    def __init__(
        self,
        transaction_repo: TransactionRepository,
        categories: CategoryService,
        transactions: TransactionStore,
        settings: AppSettingsService,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(session, logger)
        self._repo: TransactionRepository = transaction_repo
        self._categories: CategoryService = categories
        self._transactions: TransactionStore = transactions
        self._settings: AppSettingsService = settings
        self._config: AppConfig = config

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_table(
        self,
        source: Union[str, Path, bytes],
        filename: Optional[str] = None,
    ) -> ParsedTable:
        """Read a CSV or XLSX file into a :class:`ParsedTable`.

        *source* is a path, or raw bytes together with *filename* (whose
        extension selects the format).

        Raises
        ------
        ValueError
            If the file has no header row or is not a readable spreadsheet.
        """
        if isinstance(source, bytes):
            content = source
            name = filename or "upload.csv"
        else:
            path = Path(source)
            content = path.read_bytes()
            name = filename or path.name

        if name.lower().endswith((".xlsx", ".xlsm")):
            table = self._read_xlsx(content)
        else:
            table = self._read_csv(content)

        if not table.headers:
            raise ValueError("The file has no header row.")
        self._logger.info(
            "Read %d rows x %d columns from %s.", len(table.rows), len(table.headers), name,
        )
        return table

    def _read_csv(self, content: bytes) -> ParsedTable:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValueError(f"The file is not valid UTF-8 text: {exc}") from exc

        reader = csv.reader(io.StringIO(text))
        try:
            raw_headers = next(reader)
        except StopIteration:
            return ParsedTable(headers=[])
        headers = [h.strip() for h in raw_headers]

        rows: list[dict[str, str]] = []
        for record in reader:
            if not any(cell.strip() for cell in record):
                continue
            padded = record + [""] * (len(headers) - len(record))
            rows.append({header: padded[i].strip() for i, header in enumerate(headers)})
        return ParsedTable(headers=headers, rows=rows)

    def _read_xlsx(self, content: bytes) -> ParsedTable:
        workbook: Optional[Workbook] = None
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
            worksheet = workbook.worksheets[0]
            row_iter = worksheet.iter_rows(values_only=True)
            try:
                header_cells = next(row_iter)
            except StopIteration:
                return ParsedTable(headers=[])
            headers = [
                _cell_to_text(cell) or f"Column {i + 1}" for i, cell in enumerate(header_cells)
            ]
            rows: list[dict[str, str]] = []
            for cells in row_iter:
                values = [_cell_to_text(cell) for cell in cells]
                if not any(values):
                    continue
                values += [""] * (len(headers) - len(values))
                rows.append({header: values[i] for i, header in enumerate(headers)})
            return ParsedTable(headers=headers, rows=rows)
        except (OSError, KeyError, zipfile.BadZipFile, InvalidFileException) as exc:
            raise ValueError(f"Could not read the workbook: {exc}") from exc
        finally:
            if workbook is not None:
                workbook.close()

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def suggest_mapping(self, headers: list[str]) -> dict[str, MappedField]:
        """The mapping saved for these headers, else the name-based guess."""
        saved = self._settings.get_import_mapping(headers)
        if saved is not None:
            self._logger.debug("Using saved column mapping.")
            return saved
        return infer_mapping(headers)

    def preview(self, table: ParsedTable, rows: Optional[int] = None) -> ImportPreview:
        limit = rows or self._config.IMPORT_PREVIEW_ROWS
        mapping = self.suggest_mapping(table.headers)
        return ImportPreview(
            headers=table.headers,
            rows=table.rows[:limit],
            total_rows=len(table.rows),
            mapping=mapping,
            missing_fields=missing_fields(mapping),
        )

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_transactions(
        self,
        table: ParsedTable,
        mapping: Optional[dict[str, MappedField]] = None,
        remember_mapping: bool = True,
    ) -> ServiceResult[ImportResult]:
        """Import every valid row of *table* using *mapping*.

        A row is imported when it has a description, an amount above
        zero, a parseable date, a type of ``income``/``expense`` and a
        category name; every other row is skipped.
        """
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        mapping = mapping or self.suggest_mapping(table.headers)
        missing = missing_fields(mapping)
        if missing:
            return ServiceResult(
                success=False,
                error="Please map all required fields: " + ", ".join(missing),
                status_code=400,
            )
        if not table.rows:
            return ServiceResult(
                success=False, error="The file contains no data rows.", status_code=400,
            )

        if remember_mapping:
            self._settings.save_import_mapping(table.headers, mapping)

        columns = _field_columns(mapping)
        notes_column = columns.get(MappedField.NOTES) or next(
            (h for h in table.headers if h.strip().lower() == "notes"), None,
        )

        self._categories.refetch()

        parsed: list[tuple[int, dict[str, JsonValue], str]] = []
        skipped_rows: list[int] = []
        wanted: dict[str, tuple[str, TransactionType]] = {}

        for index, row in enumerate(table.rows, start=1):
            description = row.get(columns[MappedField.DESCRIPTION], "").strip()
            amount = parse_amount(row.get(columns[MappedField.AMOUNT]))
            tx_date = parse_date(row.get(columns[MappedField.DATE]))
            tx_type = parse_type(row.get(columns[MappedField.TYPE]))
            category_name = row.get(columns[MappedField.CATEGORY], "").strip()

            if (
                not description
                or amount is None
                or amount <= 0
                or tx_date is None
                or tx_type is None
                or not category_name
            ):
                skipped_rows.append(index)
                continue

            key = category_key(category_name, tx_type)
            wanted.setdefault(key, (category_name, tx_type))
            notes = (row.get(notes_column, "") if notes_column else "").strip()
            parsed.append((
                index,
                {
                    "user_id": user_id,
                    "description": description,
                    "amount": str(amount),
                    "type": str(tx_type),
                    "transaction_date": tx_date.isoformat(),
                    "notes": notes or None,
                },
                key,
            ))

        try:
            created_categories = self._categories.create_missing(wanted)
        except RepositoryError as exc:
            return ServiceResult(
                success=False,
                error=f"Failed to create categories: {exc}",
                status_code=502,
            )

        category_ids = {key: c.id for key, c in self._categories.by_key().items()}
        payloads: list[dict[str, JsonValue]] = []
        for index, payload, key in parsed:
            category_id = category_ids.get(key)
            if category_id is None:
                skipped_rows.append(index)
                continue
            payloads.append({**payload, "category_id": category_id})

        imported = 0
        if payloads:
            try:
                imported = self._repo.create_many(
                    payloads, batch_size=self._config.IMPORT_BATCH_SIZE,
                )
            except RepositoryError as exc:
                self._transactions.refetch()
                return ServiceResult(
                    success=False,
                    error=f"Failed to insert transactions: {exc}",
                    status_code=502,
                )

        self._transactions.refetch()

        result = ImportResult(
            imported=imported,
            skipped=len(skipped_rows),
            categories_created=len(created_categories),
            skipped_rows=sorted(skipped_rows),
        )
        log_audit_event(
            logger=self._logger,
            action="IMPORT",
            entity_type="Transaction",
            entity_id="*",
            user_id=user_id,
            details={
                "imported": result.imported,
                "skipped": result.skipped,
                "categories_created": result.categories_created,
            },
            conn=self._repo.sqlite,
        )
        self._logger.info(result.message)
        return ServiceResult(success=True, data=result, status_code=201)

    # ------------------------------------------------------------------
    # Sample file
    # ------------------------------------------------------------------

    def sample_csv(self) -> tuple[str, str]:
        """Return ``(filename, csv_text)`` of a two-row example file."""
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(SAMPLE_ROWS[0]), lineterminator="\r\n")
        writer.writeheader()
        writer.writerows(SAMPLE_ROWS)
        return self._config.SAMPLE_CSV_FILENAME, buffer.getvalue()
