"""Declarative base shared by every engine table."""

from sqlalchemy import inspect
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Engine models name their tables explicitly so migrations stay stable."""

    def __repr__(self) -> str:
        identity = inspect(self).identity
        return f"<{type(self).__name__} id={identity[0] if identity else None}>"
