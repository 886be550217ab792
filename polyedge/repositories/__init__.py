"""Storage access for the decision core."""

from polyedge.repositories.base import BLACKOUT_KEY, PATTERNS_KEY, Repositories
from polyedge.repositories.memory import build_memory_repositories
from polyedge.repositories.sql import build_sql_repositories

__all__ = [
    "BLACKOUT_KEY",
    "PATTERNS_KEY",
    "Repositories",
    "build_memory_repositories",
    "build_sql_repositories",
]
