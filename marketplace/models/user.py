from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from marketplace.core.clock import utcnow


class User(SQLModel, table=True):
    """Account row owned by the auth service; the payment core only reads it."""

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    full_name: str = ""
    is_admin: bool = False
    is_banned: bool = False
    created_at: datetime | None = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
