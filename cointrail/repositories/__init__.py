"""
Repository Layer.

Repositories own all Supabase and SQLite queries.  Services depend on them
and never touch the clients directly.
"""

from cointrail.repositories.base_repository import BaseRepository, RepositoryError
from cointrail.repositories.category_repository import CategoryRepository
from cointrail.repositories.transaction_repository import TransactionRepository
from cointrail.repositories.user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "CategoryRepository",
    "RepositoryError",
    "TransactionRepository",
    "UserRepository",
]
