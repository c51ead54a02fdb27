"""
Database models for the Velora document store

Every record (followups, rate-limit counters, daily cost records, dedup
claims, consumed action-link nonces) lives in a single `documents` table
keyed by (collection, key) with a JSON payload, mirroring the document
database the radar was designed against.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import String, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DocumentRecord(Base):
    """A single document in a named collection"""
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Copied from the payload's userId so per-user queries hit an index
    owner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_documents_collection_owner", "collection", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<DocumentRecord {self.collection}/{self.key}>"
