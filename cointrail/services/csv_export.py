"""
Transaction Export.

Renders the signed-in user's transactions as CSV or XLSX bytes.  Writing
the file to disk is left to the caller.
"""

from __future__ import annotations

import csv
import io
from datetime import date
from typing import Optional, Union

from openpyxl import Workbook
from openpyxl.styles import Font

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.config import AppConfig
from cointrail.logger import StructuredLogger
from cointrail.models.enums import ExportFormat
from cointrail.models.service_models import ExportFile, ServiceResult
from cointrail.models.transaction import Transaction
from cointrail.services.base_service import UserScopedService
from cointrail.services.categories import CategoryService
from cointrail.services.transactions import TransactionStore
from cointrail.utils.audit import log_audit_event

EXPORT_COLUMNS: tuple[str, ...] = (
    "Date", "Description", "Category", "Type", "Amount", "Notes",
)

_XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class ExportService(UserScopedService):
    """Builds downloadable exports from the loaded transaction list."""

    def __init__(
        self,
        transactions: TransactionStore,
        categories: CategoryService,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(session, logger)
        self._transactions: TransactionStore = transactions
        self._categories: CategoryService = categories
        self._config: AppConfig = config

    def export(
        self,
        fmt: Union[ExportFormat, str] = ExportFormat.CSV,
        start: Optional[date] = None,
        end: Optional[date] = None,
        today: Optional[date] = None,
    ) -> ServiceResult[ExportFile]:
        """Export transactions dated within ``[start, end]`` (both optional).

        The filename carries *today* (default: the current date), e.g.
        ``cointrail-export-2025-07-30.csv``.
        """
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        try:
            export_format = ExportFormat(fmt)
        except ValueError:
            return ServiceResult(
                success=False, error=f"Unsupported export format: {fmt}", status_code=400,
            )
        if start is not None and end is not None and start > end:
            return ServiceResult(
                success=False, error="Start date must not be after end date.", status_code=400,
            )

        self._transactions.ensure_loaded()
        selected = [
            tx for tx in self._transactions.transactions
            if (start is None or tx.transaction_date >= start)
            and (end is None or tx.transaction_date <= end)
        ]
        if not selected:
            return ServiceResult(
                success=False, error="No transactions to export.", status_code=404,
            )

        rows = [self._row(tx) for tx in selected]
        stamp = (today or date.today()).strftime(self._config.EXPORT_DATE_FORMAT)
        filename = f"{self._config.EXPORT_FILENAME_PREFIX}-{stamp}.{export_format}"

        if export_format == ExportFormat.XLSX:
            content = _render_xlsx(rows)
            media_type = _XLSX_MEDIA_TYPE
        else:
            content = _render_csv(rows)
            media_type = "text/csv"

        log_audit_event(
            logger=self._logger,
            action="EXPORT",
            entity_type="Transaction",
            entity_id="*",
            user_id=user_id,
            details={"format": str(export_format), "rows": len(rows)},
            conn=self._transactions.sqlite,
        )
        return ServiceResult(
            success=True,
            data=ExportFile(
                filename=filename,
                content=content,
                row_count=len(rows),
                media_type=media_type,
            ),
        )

    def _row(self, tx: Transaction) -> list[str]:
        return [
            tx.transaction_date.isoformat(),
            tx.description,
            self._categories.get_name(tx.category_id),
            str(tx.type),
            str(tx.amount),
            tx.notes or "",
        ]


def _render_csv(rows: list[list[str]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(EXPORT_COLUMNS)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _render_xlsx(rows: list[list[str]]) -> bytes:
    """One ``Transactions`` sheet; amounts are written as numbers.

    Every other column is forced to a string cell, so text starting with
    ``=`` is never stored as a formula.
    """
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Transactions"
    sheet.append(list(EXPORT_COLUMNS))
    for cell in sheet[1]:
        cell.font = Font(bold=True)

    amount_index = EXPORT_COLUMNS.index("Amount")
    for row in rows:
        values: list[object] = list(row)
        values[amount_index] = float(row[amount_index])
        sheet.append(values)
        for index, cell in enumerate(sheet[sheet.max_row]):
            if index != amount_index:
                cell.data_type = "s"

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
