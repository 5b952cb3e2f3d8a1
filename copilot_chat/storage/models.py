"""SQLAlchemy ORM model for persisted conversations."""

from sqlalchemy import BigInteger, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StoredConversation(Base):
    """One row per conversation; the full thread lives in the JSON blob."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    model: Mapped[str | None] = mapped_column(String(200))
    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    blob: Mapped[str] = mapped_column(Text, nullable=False)
