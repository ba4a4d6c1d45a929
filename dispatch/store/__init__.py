"""
Record stores for orders, couriers, companies, ratings and the tracking-code index.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from dispatch.models.domain import Company, Courier, Order, Rating
from dispatch.store.base import RecordStore, Versioned
from dispatch.store.memory import InMemoryRecordStore
from dispatch.utils.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class TrackingCodeEntry(BaseModel):
    """Unique index entry mapping a public tracking code to its order."""

    tracking_code: str
    order_id: UUID


@dataclass
class Stores:
    orders: RecordStore[Order]
    couriers: RecordStore[Courier]
    companies: RecordStore[Company]
    ratings: RecordStore[Rating]
    tracking_codes: RecordStore[TrackingCodeEntry]


def build_memory_stores() -> Stores:
    return Stores(
        orders=InMemoryRecordStore(Order, "orders"),
        couriers=InMemoryRecordStore(Courier, "couriers"),
        companies=InMemoryRecordStore(Company, "companies"),
        ratings=InMemoryRecordStore(Rating, "ratings"),
        tracking_codes=InMemoryRecordStore(TrackingCodeEntry, "tracking_codes"),
    )


def build_stores(config: Optional[Settings] = None, db=None) -> Stores:
    """
    Build the store bundle for the configured backend.

    Args:
        config: Settings to read STORE_BACKEND from (defaults to global settings)
        db: Database instance for the postgres backend (defaults to the global pool)
    """
    config = config or default_settings
    if config.STORE_BACKEND == "memory":
        logger.info("Using in-memory record stores")
        return build_memory_stores()

    from dispatch.store.postgres import PostgresRecordStore, ensure_schema
    from dispatch.utils.database import get_db

    db = db or get_db()
    ensure_schema(db)
    logger.info("Using PostgreSQL record stores")
    return Stores(
        orders=PostgresRecordStore(db, Order, "orders"),
        couriers=PostgresRecordStore(db, Courier, "couriers"),
        companies=PostgresRecordStore(db, Company, "companies"),
        ratings=PostgresRecordStore(db, Rating, "ratings"),
        tracking_codes=PostgresRecordStore(db, TrackingCodeEntry, "tracking_codes"),
    )


__all__ = [
    "InMemoryRecordStore",
    "RecordStore",
    "Stores",
    "TrackingCodeEntry",
    "Versioned",
    "build_memory_stores",
    "build_stores",
]
