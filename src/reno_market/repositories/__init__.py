"""Listing and agency stores."""

from __future__ import annotations

import logging
from typing import Union

from reno_market.config import Settings

from .base import AgencyStore, ListingStore, SubscriptionChange
from .memory import MemoryStore
from .postgres import PostgresStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    if settings.store_backend == "postgres":
        return PostgresStore(settings.db_url)
    if settings.store_backend != "memory":
        logger.warning("Unknown STORE_BACKEND %r, using memory", settings.store_backend)
    return MemoryStore()


__all__ = [
    "AgencyStore",
    "ListingStore",
    "MemoryStore",
    "PostgresStore",
    "SubscriptionChange",
    "build_store",
]
