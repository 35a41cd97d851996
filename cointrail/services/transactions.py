"""
Transaction Store.

Holds the signed-in user's transaction list and applies changes
optimistically: local state changes first, the write is sent, and the
change is reverted when the backend rejects it.  ``summary`` is derived
from the current list on demand.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.logger import StructuredLogger
from cointrail.models.enums import TransactionType
from cointrail.models.service_models import ServiceResult, Summary
from cointrail.models.transaction import Transaction, TransactionInput, TransactionUpdate
from cointrail.repositories.base_repository import RepositoryError
from cointrail.repositories.transaction_repository import TransactionRepository
from cointrail.services.base_service import UserScopedService
from cointrail.services.categories import CategoryService
from cointrail.services.summary import calculate_summary
from cointrail.utils.audit import log_audit_event
from cointrail.utils.general import JsonValue, convert_to_json_safe

Listener = Callable[[list[Transaction]], None]

_PROVISIONAL_PREFIX = "pending-"


class TransactionStore(UserScopedService):
    """Transaction state for the signed-in user.

    Parameters
    ----------
    transaction_repo:
        Repository for the ``transactions`` table.
    categories:
        Category service, used to check that a transaction's type matches
        its category's type.
    session:
        Current session.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        transaction_repo: TransactionRepository,
        categories: CategoryService,
        session: SessionManager,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(session, logger)
        self._repo: TransactionRepository = transaction_repo
        self._categories: CategoryService = categories
        self._lock: threading.RLock = threading.RLock()
        self._transactions: list[Transaction] = []
        self._listeners: list[Listener] = []
        self._loaded: bool = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def transactions(self) -> list[Transaction]:
        with self._lock:
            return list(self._transactions)

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Local connection, for callers that persist audit events."""
        return self._repo.sqlite

    @property
    def summary(self) -> Summary:
        return calculate_summary(self.transactions)

    def refetch(self) -> ServiceResult[list[Transaction]]:
        """Reload every transaction of the user, newest ``created_at`` first."""
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        transactions = self._repo.list_for_user(user_id)
        self._replace_state(transactions)
        self._loaded = True
        return ServiceResult(success=True, data=list(transactions))

    def ensure_loaded(self) -> None:
        if not self._loaded:
            self.refetch()

    def get(self, transaction_id: str) -> Optional[Transaction]:
        self.ensure_loaded()
        with self._lock:
            return next((t for t in self._transactions if t.id == transaction_id), None)

    def recent(self, limit: int = 5) -> list[Transaction]:
        self.ensure_loaded()
        return self.transactions[:limit]

    def search(self, term: str) -> list[Transaction]:
        """Case-insensitive description match, latest ``transaction_date`` first.

        A blank *term* matches nothing.
        """
        needle = term.strip().lower()
        if not needle:
            return []
        self.ensure_loaded()
        matches = [t for t in self.transactions if needle in t.description.lower()]
        return sorted(matches, key=lambda t: t.transaction_date, reverse=True)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Call *callback* with the new list after every change.

        Returns a function that removes the subscription.
        """
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = self.transactions
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                self._logger.error("Transaction listener failed.", exc_info=True)

    def _replace_state(self, transactions: list[Transaction]) -> None:
        with self._lock:
            self._transactions = list(transactions)
        self._notify()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, data: TransactionInput | dict[str, object]) -> ServiceResult[Transaction]:
        """Record a transaction.

        A provisional row is prepended at once and swapped for the stored
        row on success; it is removed again when the insert fails.
        """
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        try:
            tx_input = data if isinstance(data, TransactionInput) else TransactionInput(**data)
        except ValidationError as exc:
            return ServiceResult(success=False, error=_first_error(exc), status_code=400)

        error = self._check_category(tx_input.category_id, tx_input.type)
        if error:
            return ServiceResult(success=False, error=error, status_code=400)

        payload: dict[str, JsonValue] = {
            **convert_to_json_safe(tx_input.model_dump(exclude_none=True)),
            "user_id": user_id,
        }
        now = datetime.now(timezone.utc)
        provisional = Transaction(
            id=f"{_PROVISIONAL_PREFIX}{self._repo.new_id()}",
            user_id=user_id,
            created_at=now,
            updated_at=now,
            **tx_input.model_dump(),
        )
        with self._lock:
            self._transactions.insert(0, provisional)
        self._notify()

        try:
            created = self._repo.create(payload)
        except RepositoryError as exc:
            with self._lock:
                self._transactions = [t for t in self._transactions if t.id != provisional.id]
            self._notify()
            self._logger.warning("Reverted optimistic add: %s", exc)
            return ServiceResult(
                success=False, error=f"Could not save transaction: {exc}", status_code=502,
            )

        with self._lock:
            self._transactions = [
                created if t.id == provisional.id else t for t in self._transactions
            ]
        self._notify()

        log_audit_event(
            logger=self._logger,
            action="CREATE",
            entity_type="Transaction",
            entity_id=created.id,
            user_id=user_id,
            details={"type": str(created.type), "amount": str(created.amount)},
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True, data=created, status_code=201)

    def update(
        self, transaction_id: str, changes: TransactionUpdate | dict[str, object],
    ) -> ServiceResult[Transaction]:
        """Apply *changes*; the previous row is restored on failure."""
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        try:
            update = (
                changes if isinstance(changes, TransactionUpdate)
                else TransactionUpdate(**changes)
            )
        except ValidationError as exc:
            return ServiceResult(success=False, error=_first_error(exc), status_code=400)

        previous = self.get(transaction_id)
        if previous is None:
            return ServiceResult(success=False, error="Transaction not found.", status_code=404)

        delta = update.changes()
        if not delta:
            return ServiceResult(success=True, data=previous)

        merged = previous.model_copy(update=delta)
        error = self._check_category(merged.category_id, merged.type)
        if error:
            return ServiceResult(success=False, error=error, status_code=400)

        self._swap(transaction_id, merged)
        try:
            updated = self._repo.update(
                transaction_id, user_id, convert_to_json_safe(delta),
            )
        except RepositoryError as exc:
            self._swap(transaction_id, previous)
            self._logger.warning("Reverted optimistic update of %s: %s", transaction_id, exc)
            return ServiceResult(
                success=False, error=f"Could not update transaction: {exc}", status_code=502,
            )

        if updated is None:
            self._swap(transaction_id, previous)
            return ServiceResult(success=False, error="Transaction not found.", status_code=404)

        self._swap(transaction_id, updated)
        log_audit_event(
            logger=self._logger,
            action="UPDATE",
            entity_type="Transaction",
            entity_id=transaction_id,
            user_id=user_id,
            details={"fields": ",".join(sorted(delta))},
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True, data=updated)

    def delete(self, transaction_id: str) -> ServiceResult[None]:
        """Remove a transaction; it is re-inserted at its old position on failure."""
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        self.ensure_loaded()
        with self._lock:
            index = next(
                (i for i, t in enumerate(self._transactions) if t.id == transaction_id), None,
            )
            if index is None:
                return ServiceResult(
                    success=False, error="Transaction not found.", status_code=404,
                )
            removed = self._transactions.pop(index)
        self._notify()

        try:
            self._repo.delete(transaction_id, user_id)
        except RepositoryError as exc:
            with self._lock:
                self._transactions.insert(min(index, len(self._transactions)), removed)
            self._notify()
            self._logger.warning("Reverted optimistic delete of %s: %s", transaction_id, exc)
            return ServiceResult(
                success=False, error=f"Could not delete transaction: {exc}", status_code=502,
            )

        log_audit_event(
            logger=self._logger,
            action="DELETE",
            entity_type="Transaction",
            entity_id=transaction_id,
            user_id=user_id,
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True)

    def delete_all(self) -> ServiceResult[None]:
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        try:
            self._repo.delete_all_for_user(user_id)
        except RepositoryError as exc:
            return ServiceResult(success=False, error=str(exc), status_code=502)

        with self._lock:
            removed = len(self._transactions)
        self._replace_state([])
        self._loaded = True

        log_audit_event(
            logger=self._logger,
            action="DELETE_ALL",
            entity_type="Transaction",
            entity_id="*",
            user_id=user_id,
            details={"count": removed},
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True)

    def invalidate(self) -> None:
        """Forget loaded state (sign-out, data reset)."""
        self._loaded = False
        self._replace_state([])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _swap(self, transaction_id: str, replacement: Transaction) -> None:
        with self._lock:
            self._transactions = [
                replacement if t.id == transaction_id else t for t in self._transactions
            ]
        self._notify()

    def _check_category(self, category_id: str, tx_type: TransactionType) -> Optional[str]:
        category = self._categories.get(category_id)
        if category is None:
            return "Category not found."
        if category.type != tx_type:
            return f"Category '{category.name}' is a {category.type} category."
        return None


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(part) for part in err.get("loc", ()))
    return f"{field}: {err.get('msg')}" if field else str(err.get("msg"))
