"""SQLAlchemy ORM models for ShopScout.

The database stores run artifacts only. Specs, carts and sessions belong to
the services that own them.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on Postgres, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class ItemRunRow(Base):
    __tablename__ = "item_runs"
    __table_args__ = (
        UniqueConstraint("item_id", "version", name="uq_item_runs_item_version"),
        Index("idx_item_runs_item", "item_id", "version"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    results_json: Mapped[list] = mapped_column(JSONType, nullable=False)
    ranked_candidates_json: Mapped[list] = mapped_column(JSONType, nullable=False)
    trace_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
