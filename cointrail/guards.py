"""
Authentication Guard Decorator.

Produces a decorator for gating service-layer callables behind an
authenticated session.

Usage::

    from cointrail.auth import SessionManager
    from cointrail.guards import require_auth

    session = SessionManager()
    auth_guard = require_auth(session)

    @auth_guard
    def export_everything() -> bytes:
        ...
"""

from __future__ import annotations

from functools import wraps
from typing import Callable, ParamSpec, TypeVar

from cointrail.auth import AuthenticationError, SessionManager

__all__ = ["AuthenticationError", "require_auth"]

P = ParamSpec("P")
R = TypeVar("R")


def require_auth(session: SessionManager) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Return a decorator that raises :class:`AuthenticationError` when
    *session* has no logged-in user at call time.
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            if not session.is_authenticated:
                raise AuthenticationError(
                    "Authentication required. Please log in before "
                    "performing this action."
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator
