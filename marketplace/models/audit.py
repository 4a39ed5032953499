from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from marketplace.core.clock import utcnow


class AuditLog(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # payment_created, payment_verified, payment_refunded, webhook_<gateway>
    user_id: int | None = Field(default=None, index=True)
    order_id: str | None = Field(default=None, index=True)
    detail: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
