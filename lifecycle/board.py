"""
Local last-known-good view of one entity collection.

Writes are applied optimistically, confirmed by the backend, and reverted
when the backend refuses them. A conflict or a network failure leaves the
outcome unknown, so the record is re-fetched after the revert.
"""
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from loguru import logger
from pydantic import BaseModel

from lifecycle.errors import BackendError, CaseError, ConflictError, NetworkError

M = TypeVar("M", bound=BaseModel)


class Board(Generic[M]):

    def __init__(self, name: str, load_one: Callable[[str], M]):
        self.name = name
        self._load_one = load_one
        self.items: Dict[str, M] = {}

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self.items

    def values(self) -> List[M]:
        return list(self.items.values())

    def replace_all(self, records: Iterable[M]) -> None:
        self.items = {r.id: r for r in records}

    def put(self, record: M) -> M:
        self.items[record.id] = record
        return record

    def drop(self, entity_id: str) -> None:
        self.items.pop(entity_id, None)

    def get(self, entity_id: str) -> M:
        """Cached record, fetched from the backend on first access."""
        record = self.items.get(entity_id)
        if record is None:
            record = self.put(self._load_one(entity_id))
        return record

    def reload(self, entity_id: str) -> Optional[M]:
        """Replace the cached record with the backend's canonical state."""
        try:
            return self.put(self._load_one(entity_id))
        except CaseError as e:
            logger.error(f"{self.name} {entity_id}: re-fetch failed, keeping last known state: {e}")
            return self.items.get(entity_id)

    def mutate(self, entity_id: str, changes: Dict[str, object], call: Callable[[], M]) -> M:
        """
        Apply ``changes`` locally, then confirm them with ``call``.

        Args:
            entity_id: Record to mutate
            changes: Field updates shown immediately
            call: Backend write returning the updated record

        Returns:
            The record as confirmed by the backend
        """
        original = self.get(entity_id)
        self.items[entity_id] = original.model_copy(update=changes)

        try:
            confirmed = call()
        except ConflictError:
            logger.warning(f"{self.name} {entity_id}: conflict, re-fetching canonical state")
            self.items[entity_id] = original
            self.reload(entity_id)
            raise
        except NetworkError as e:
            # the write may have landed before the connection dropped
            logger.warning(f"{self.name} {entity_id}: {e.message}, re-fetching canonical state")
            self.items[entity_id] = original
            self.reload(entity_id)
            raise
        except BackendError as e:
            logger.info(f"{self.name} {entity_id}: reverting optimistic change ({e.message})")
            self.items[entity_id] = original
            raise

        return self.put(confirmed)
