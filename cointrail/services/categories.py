"""
Category Service.

Holds the signed-in user's categories in memory and validates changes
before they reach the repository.
"""

from __future__ import annotations

import threading
from typing import Optional

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.logger import StructuredLogger
from cointrail.models.category import Category, category_key
from cointrail.models.enums import TransactionType
from cointrail.models.service_models import ServiceResult
from cointrail.repositories.base_repository import RepositoryError
from cointrail.repositories.category_repository import CategoryRepository
from cointrail.services.base_service import UserScopedService
from cointrail.utils.audit import log_audit_event
from cointrail.utils.general import JsonValue


class CategoryService(UserScopedService):
    """In-memory category list for the signed-in user, backed by the repository."""

    def __init__(
        self,
        category_repo: CategoryRepository,
        session: SessionManager,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(session, logger)
        self._repo: CategoryRepository = category_repo
        self._lock: threading.RLock = threading.RLock()
        self._categories: list[Category] = []
        self._loaded: bool = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def refetch(self) -> ServiceResult[list[Category]]:
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        categories = self._repo.list_for_user(user_id)
        with self._lock:
            self._categories = categories
            self._loaded = True
        return ServiceResult(success=True, data=list(categories))

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.refetch()

    def list(self, category_type: Optional[TransactionType] = None) -> list[Category]:
        """Loaded categories, optionally only those of *category_type*."""
        self._ensure_loaded()
        with self._lock:
            if category_type is None:
                return list(self._categories)
            return [c for c in self._categories if c.type == category_type]

    def get(self, category_id: str) -> Optional[Category]:
        self._ensure_loaded()
        with self._lock:
            return next((c for c in self._categories if c.id == category_id), None)

    def get_name(self, category_id: Optional[str], default: str = "N/A") -> str:
        if not category_id:
            return default
        category = self.get(category_id)
        return category.name if category is not None else default

    def find(self, name: str, category_type: TransactionType) -> Optional[Category]:
        """Case-insensitive lookup by name within one type."""
        self._ensure_loaded()
        key = category_key(name, category_type)
        with self._lock:
            return next((c for c in self._categories if c.lookup_key == key), None)

    def by_key(self) -> dict[str, Category]:
        """Loaded categories indexed by ``lower(name)|type``."""
        self._ensure_loaded()
        with self._lock:
            return {c.lookup_key: c for c in self._categories}

    def invalidate(self) -> None:
        with self._lock:
            self._categories = []
            self._loaded = False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(
        self,
        name: str,
        category_type: TransactionType,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> ServiceResult[Category]:
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        name = name.strip()
        error = self._validate_name(name, category_type)
        if error:
            return ServiceResult(success=False, error=error, status_code=400)

        payload: dict[str, JsonValue] = {
            "name": name,
            "type": str(category_type),
            "user_id": user_id,
        }
        if icon:
            payload["icon"] = icon
        if color:
            payload["color"] = color

        try:
            created = self._repo.create(payload)
        except RepositoryError as exc:
            return ServiceResult(success=False, error=str(exc), status_code=502)

        with self._lock:
            self._categories.append(created)
            self._categories.sort(key=lambda c: c.name.lower())

        log_audit_event(
            logger=self._logger,
            action="CREATE",
            entity_type="Category",
            entity_id=created.id,
            user_id=user_id,
            details={"name": created.name, "type": str(created.type)},
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True, data=created, status_code=201)

    def create_missing(
        self, wanted: dict[str, tuple[str, TransactionType]],
    ) -> list[Category]:
        """Create every ``key -> (name, type)`` not already loaded, in one batch.

        Used by the importer.  Raises ``RepositoryError`` so the caller
        can abort the whole import.
        """
        user_id = self._current_user_id()
        self._ensure_loaded()
        existing = self.by_key()
        payloads: list[dict[str, JsonValue]] = [
            {"name": name, "type": str(category_type), "user_id": user_id}
            for key, (name, category_type) in wanted.items()
            if key not in existing
        ]
        if not payloads:
            return []

        created = self._repo.create_many(payloads)
        with self._lock:
            self._categories.extend(created)
            self._categories.sort(key=lambda c: c.name.lower())
        self._logger.info("Created %d categories in one batch.", len(created))
        return created

    def update(
        self,
        category_id: str,
        name: Optional[str] = None,
        category_type: Optional[TransactionType] = None,
    ) -> ServiceResult[Category]:
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        current = self.get(category_id)
        if current is None:
            return ServiceResult(success=False, error="Category not found.", status_code=404)

        new_name = name.strip() if name is not None else current.name
        new_type = category_type or current.type
        error = self._validate_name(new_name, new_type, exclude_id=category_id)
        if error:
            return ServiceResult(success=False, error=error, status_code=400)

        changes: dict[str, JsonValue] = {"name": new_name, "type": str(new_type)}
        try:
            updated = self._repo.update(category_id, user_id, changes)
        except RepositoryError as exc:
            return ServiceResult(success=False, error=str(exc), status_code=502)
        if updated is None:
            return ServiceResult(success=False, error="Category not found.", status_code=404)

        with self._lock:
            self._categories = [updated if c.id == category_id else c for c in self._categories]
            self._categories.sort(key=lambda c: c.name.lower())

        log_audit_event(
            logger=self._logger,
            action="UPDATE",
            entity_type="Category",
            entity_id=category_id,
            user_id=user_id,
            details={"name": updated.name, "type": str(updated.type)},
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True, data=updated)

    def delete(self, category_id: str) -> ServiceResult[None]:
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)

        if self.get(category_id) is None:
            return ServiceResult(success=False, error="Category not found.", status_code=404)

        try:
            self._repo.delete(category_id, user_id)
        except RepositoryError as exc:
            return ServiceResult(success=False, error=str(exc), status_code=502)

        with self._lock:
            self._categories = [c for c in self._categories if c.id != category_id]

        log_audit_event(
            logger=self._logger,
            action="DELETE",
            entity_type="Category",
            entity_id=category_id,
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
            removed = len(self._categories)
            self._categories = []
            self._loaded = True

        log_audit_event(
            logger=self._logger,
            action="DELETE_ALL",
            entity_type="Category",
            entity_id="*",
            user_id=user_id,
            details={"count": removed},
            conn=self._repo.sqlite,
        )
        return ServiceResult(success=True)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_name(
        self,
        name: str,
        category_type: TransactionType,
        exclude_id: Optional[str] = None,
    ) -> Optional[str]:
        if not name:
            return "Category name is required."
        self._ensure_loaded()
        duplicate = self.find(name, category_type)
        if duplicate is not None and duplicate.id != exclude_id:
            return f"A {category_type} category named '{duplicate.name}' already exists."
        return None
