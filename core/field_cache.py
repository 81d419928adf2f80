"""
Field-id cache — partition key → downstream field id.

Populated lazily: a miss asks the downstream directory once and stores the
answer (insert-if-absent, so concurrent misses converge on one value).
Entries are never invalidated here.
"""
from __future__ import annotations

import structlog

from backend.connector import DownstreamConnector
from database.store_base import BaseStagingStore
from models.errors import DownstreamFieldNotFound
from models.schemas import FieldIdCacheEntry

logger = structlog.get_logger()


class FieldIdCache:

    def __init__(self, store: BaseStagingStore, directory: DownstreamConnector, field_name: str = "timerdone"):
        self.store = store
        self.directory = directory
        self.field_name = field_name

    async def resolve(self, partition_key: str, location_id: str) -> str:
        field_id = await self.store.get_field_id(partition_key)
        if field_id:
            return field_id

        field_id = await self.directory.lookup_field_id(location_id)
        if not field_id:
            logger.warning("downstream_field_not_found",
                           partition_key=partition_key,
                           location_id=location_id,
                           field_name=self.field_name)
            raise DownstreamFieldNotFound(f'Custom field "{self.field_name}" not found downstream')

        stored = await self.store.put_field_id(FieldIdCacheEntry(
            partition_key=partition_key,
            location_id=location_id,
            field_id=field_id,
        ))
        logger.info("field_id_cached", partition_key=partition_key, field_id=stored)
        return stored
