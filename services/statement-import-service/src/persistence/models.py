"""SQLAlchemy models for import sessions, their rows, and posted expenses."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class ImportSession(Base):
    """One uploaded statement file and its pipeline progress."""

    __tablename__ = "import_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), default="PARSING", nullable=False)
    source_file: Mapped[str] = mapped_column(String(255), nullable=False)
    bank_format: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_done: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Last pipeline failure, kept for inspection of FAILED sessions
    error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    rows: Mapped[List["ImportRow"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ImportRow.source_row_index",
    )


class ImportRow(Base):
    """A classified statement row awaiting (or past) user review."""

    __tablename__ = "import_rows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("import_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="PENDING", nullable=False)

    raw_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    narration: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    datetime: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    recurring_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    confidence: Mapped[Dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    classified_by: Mapped[str] = mapped_column(String(16), default="RULE", nullable=False)
    auto_classified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    posted_expense_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("expenses.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    session: Mapped["ImportSession"] = relationship(back_populates="rows")


class Expense(Base):
    """A finished transaction record posted from a confirmed import row."""

    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    datetime: Mapped[str] = mapped_column(String(32), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
