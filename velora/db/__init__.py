from velora.db.models import Base, DocumentRecord
from velora.db.database import build_engine, build_session_maker, init_db, drop_db
from velora.db.document_store import (
    DocumentStore, MemoryDocumentStore, SQLDocumentStore, BoundedDocumentStore, Filter, Snapshot
)

__all__ = [
    "Base",
    "DocumentRecord",
    # Database
    "build_engine",
    "build_session_maker",
    "init_db",
    "drop_db",
    # Document store
    "DocumentStore",
    "MemoryDocumentStore",
    "SQLDocumentStore",
    "BoundedDocumentStore",
    "Filter",
    "Snapshot",
]
