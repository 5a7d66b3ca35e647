"""
Group listings persisted through a generic record store.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

GROUPS_COLLECTION = "groups"
GROUP_REQUIRED_FIELDS = ("title", "time", "leader", "owner")
GROUP_FIELDS = ("title", "description", "time", "leader", "role", "owner")


class RecordStore(Protocol):
    """Document store: one call to add a record to a named collection."""

    async def create_record(self, collection: str, fields: Dict[str, Any]) -> str:
        """Persist ``fields`` and return the new record id."""
        ...


class InMemoryRecordStore:
    """Process-local record store, for development and tests."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def create_record(self, collection: str, fields: Dict[str, Any]) -> str:
        record_id = uuid.uuid4().hex
        async with self._lock:
            self._collections.setdefault(collection, {})[record_id] = dict(fields)
        return record_id

    async def get_record(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            return dict(record) if record else None


class GroupValidationError(ValueError):
    pass


async def create_group(store: RecordStore, body: Dict[str, Any]) -> str:
    """
    Validate a group listing and store it.

    Args:
        store: Record store to write to
        body: Request body; unknown keys are ignored

    Returns:
        The new group id

    Raises:
        GroupValidationError: If a required field is missing or empty
    """
    missing = [name for name in GROUP_REQUIRED_FIELDS if not body.get(name)]
    if missing:
        raise GroupValidationError(f"Missing required fields: {', '.join(missing)}")

    fields = {name: body.get(name) for name in GROUP_FIELDS}
    fields["createdAt"] = datetime.now(timezone.utc).isoformat()

    group_id = await store.create_record(GROUPS_COLLECTION, fields)
    logger.info(f"Group created: {group_id}")
    return group_id
