"""
Base Service Class.

Minimal base class standardizing the logger pattern for all services.
Services extend this and add their own repository dependencies via __init__.
"""

from __future__ import annotations

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.logger import StructuredLogger
from cointrail.models.service_models import ServiceResult

UNAUTHENTICATED = "You must be signed in to do that."


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger


class UserScopedService(BaseService):
    """Service whose data belongs to the signed-in user."""

    def __init__(self, session: SessionManager, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._session: SessionManager = session

    def _current_user_id(self) -> str:
        """Return the signed-in user id.

        Raises:
            AuthenticationError: If nobody is signed in.
        """
        return self._session.get_current_user().id

    @staticmethod
    def _unauthenticated(exc: AuthenticationError) -> ServiceResult:
        return ServiceResult(success=False, error=str(exc) or UNAUTHENTICATED, status_code=401)
