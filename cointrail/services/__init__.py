"""
Business Logic Services Package.

Services depend on the Repository layer for data access and on the
``SessionManager`` for user context.

The ``create_services()`` factory wires every repository and service together,
returning a typed dict that the command-line layer can consume without
knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import TypedDict

from cointrail.auth import SessionManager
from cointrail.config import AppConfig
from cointrail.database import DatabaseManager
from cointrail.logger import get_logger
from cointrail.repositories.category_repository import CategoryRepository
from cointrail.repositories.transaction_repository import TransactionRepository
from cointrail.repositories.user_repository import UserRepository
from cointrail.services.app_settings_service import AppSettingsService
from cointrail.services.auth_service import AuthService
from cointrail.services.categories import CategoryService
from cointrail.services.csv_export import ExportService
from cointrail.services.csv_import import ImportService
from cointrail.services.data_reset import DataResetService
from cointrail.services.session_cache import SessionCacheService
from cointrail.services.storage import AttachmentService
from cointrail.services.sync_worker import SyncWorkerService
from cointrail.services.transactions import TransactionStore


class ServiceContainer(TypedDict):
    """Typed container for all application services."""

    auth_service: AuthService
    category_service: CategoryService
    transaction_store: TransactionStore
    import_service: ImportService
    export_service: ExportService
    attachment_service: AttachmentService
    data_reset_service: DataResetService
    app_settings_service: AppSettingsService
    sync_worker_service: SyncWorkerService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    session_cache: SessionCacheService,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  The
    entry-point calls this once at startup.

    Args:
        db: Initialised DatabaseManager with SQLite ready (Supabase optional).
        config: Application configuration.
        session: Holder of the signed-in user.
        session_cache: Encrypted session persistence used by auth.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("cointrail.services")

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    user_repo = UserRepository(db=db, logger=logger)
    category_repo = CategoryRepository(db=db, logger=logger)
    transaction_repo = TransactionRepository(db=db, logger=logger)

    # ------------------------------------------------------------------
    # 2. Leaf services
    # ------------------------------------------------------------------
    app_settings_service = AppSettingsService(db=db, logger=logger)
    auth_service = AuthService(
        db=db,
        session=session,
        session_cache=session_cache,
        user_repo=user_repo,
        config=config,
        logger=logger,
    )
    category_service = CategoryService(
        category_repo=category_repo,
        session=session,
        logger=logger,
    )
    sync_worker_service = SyncWorkerService(db=db, config=config, logger=logger)

    # ------------------------------------------------------------------
    # 3. State and orchestration services
    # ------------------------------------------------------------------
    transaction_store = TransactionStore(
        transaction_repo=transaction_repo,
        categories=category_service,
        session=session,
        logger=logger,
    )
    import_service = ImportService(
        transaction_repo=transaction_repo,
        categories=category_service,
        transactions=transaction_store,
        settings=app_settings_service,
        session=session,
        config=config,
        logger=logger,
    )
    export_service = ExportService(
        transactions=transaction_store,
        categories=category_service,
        session=session,
        config=config,
        logger=logger,
    )
    attachment_service = AttachmentService(
        db=db,
        transactions=transaction_store,
        session=session,
        config=config,
        logger=logger,
    )
    data_reset_service = DataResetService(
        db=db,
        transaction_repo=transaction_repo,
        category_repo=category_repo,
        transactions=transaction_store,
        categories=category_service,
        session=session,
        logger=logger,
    )

    return ServiceContainer(
        auth_service=auth_service,
        category_service=category_service,
        transaction_store=transaction_store,
        import_service=import_service,
        export_service=export_service,
        attachment_service=attachment_service,
        data_reset_service=data_reset_service,
        app_settings_service=app_settings_service,
        sync_worker_service=sync_worker_service,
    )
