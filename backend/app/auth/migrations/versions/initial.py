"""Initial migration creating the users table with credential lifecycle columns."""
from __future__ import annotations

from sqlalchemy.engine import Connection

from backend.app.auth.models import User

REVISION = "0001_initial"


def upgrade(connection: Connection) -> None:
    """Create the users table and its email/token indexes when missing."""

    User.__table__.create(connection, checkfirst=True)


def downgrade(connection: Connection) -> None:
    """Drop the users table."""

    User.__table__.drop(connection, checkfirst=True)


__all__ = ["REVISION", "upgrade", "downgrade"]
