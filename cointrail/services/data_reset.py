"""
Account Data Reset.

Deletes every transaction and category of the signed-in user through the
``reset_user_data`` database function, then drops the local cache and the
user's queued offline writes.
"""

from __future__ import annotations

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.service_models import ServiceResult
from cointrail.repositories.category_repository import CategoryRepository
from cointrail.repositories.transaction_repository import TransactionRepository
from cointrail.services.base_service import UserScopedService
from cointrail.services.categories import CategoryService
from cointrail.services.transactions import TransactionStore
from cointrail.utils.audit import log_audit_event


class DataResetService(UserScopedService):
    """Wipes the user's financial data (the profile is kept)."""

    RPC_NAME = "reset_user_data"

    def __init__(
        self,
        db: DatabaseManager,
        transaction_repo: TransactionRepository,
        category_repo: CategoryRepository,
        transactions: TransactionStore,
        categories: CategoryService,
        session: SessionManager,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(session, logger)
        self._db: DatabaseManager = db
        self._transaction_repo: TransactionRepository = transaction_repo
        self._category_repo: CategoryRepository = category_repo
        self._transactions: TransactionStore = transactions
        self._categories: CategoryService = categories

    def reset_user_data(self) -> ServiceResult[None]:
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        if not self._db.is_online:
            return ServiceResult(
                success=False,
                error="Resetting data requires a connection.",
                status_code=503,
            )

        try:
            self._db.supabase.rpc(self.RPC_NAME).execute()
        except Exception as exc:
            self._logger.error("reset_user_data RPC failed: %s", exc)
            return ServiceResult(
                success=False, error=f"Failed to reset data: {exc}", status_code=502,
            )

        # Queued offline writes would otherwise resurrect the deleted rows.
        with self._db.batch_write():
            self._transaction_repo.discard_pending_sync(user_id)
            self._category_repo.discard_pending_sync(user_id)
            self._transaction_repo.clear_cache(user_id)
            self._category_repo.clear_cache(user_id)

        self._transactions.invalidate()
        self._categories.invalidate()
        self._transactions.refetch()
        self._categories.refetch()

        log_audit_event(
            logger=self._logger,
            action="RESET",
            entity_type="Account",
            entity_id=user_id,
            user_id=user_id,
            conn=self._db.sqlite,
        )
        self._logger.info("All data reset for user %s.", user_id)
        return ServiceResult(success=True)
