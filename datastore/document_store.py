from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from app.schemas import AccountRecord, SensorDataRecord
from datastore.query import matches, run_pipeline
from settings import get_settings

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

Query = Mapping[str, Any]


class StoreUnavailableError(RuntimeError):
    """Raised when a write cannot be made durable."""


class DocumentCollection(Generic[M]):
    """Thread-safe, optionally file-backed collection of pydantic documents.

    Documents are keyed by their ``id`` attribute. Every read returns deep
    copies so callers can never mutate stored state.
    """

    def __init__(
        self,
        name: str,
        model: Type[M],
        persistence_path: Optional[Path] = None,
    ) -> None:
        self.name = name
        self.model = model
        self._items: Dict[str, M] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def create(self, document: M) -> M:
        with self._lock:
            key = self._key(document)
            if key in self._items:
                raise ValueError(f"Document {key!r} already exists in {self.name!r}.")
            self._items[key] = document.model_copy(deep=True)
            try:
                self._persist()
            except OSError as exc:
                self._items.pop(key, None)
                raise StoreUnavailableError(f"Could not persist {self.name!r}: {exc}") from exc
            return self._items[key].model_copy(deep=True)

    def create_many(self, documents: Iterable[M]) -> List[M]:
        batch = [document.model_copy(deep=True) for document in documents]
        with self._lock:
            keys = [self._key(document) for document in batch]
            duplicates = sorted(
                {key for key in keys if key in self._items} | {key for key in keys if keys.count(key) > 1}
            )
            if duplicates:
                raise ValueError(
                    f"Documents already exist in {self.name!r}: {', '.join(duplicates)}"
                )
            for key, document in zip(keys, batch):
                self._items[key] = document
            try:
                self._persist()
            except OSError as exc:
                for key in keys:
                    self._items.pop(key, None)
                raise StoreUnavailableError(f"Could not persist {self.name!r}: {exc}") from exc
            return [document.model_copy(deep=True) for document in batch]

    def find(self, query: Optional[Query] = None) -> List[M]:
        """Return every matching document, in no particular order."""
        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._items.values()
                if matches(item.model_dump(), query)
            ]

    def find_one(self, query: Query) -> Optional[M]:
        with self._lock:
            for item in self._items.values():
                if matches(item.model_dump(), query):
                    return item.model_copy(deep=True)
        return None

    def find_by_id(self, document_id: str) -> Optional[M]:
        with self._lock:
            item = self._items.get(document_id)
            if item is None:
                return None
            return item.model_copy(deep=True)

    def find_by_id_and_delete(self, document_id: str) -> Optional[M]:
        with self._lock:
            item = self._items.pop(document_id, None)
            if item is None:
                return None
            try:
                self._persist()
            except OSError as exc:
                self._items[document_id] = item
                raise StoreUnavailableError(f"Could not persist {self.name!r}: {exc}") from exc
            return item

    def find_one_and_update(self, query: Query, changes: Mapping[str, Any]) -> Optional[M]:
        """Apply ``changes`` to the first match and return the updated document."""
        with self._lock:
            for key, item in self._items.items():
                if not matches(item.model_dump(), query):
                    continue
                values = {"updated_at": datetime.now(timezone.utc), **changes}
                updated = self.model.model_validate({**item.model_dump(), **values})
                self._items[key] = updated
                try:
                    self._persist()
                except OSError as exc:
                    self._items[key] = item
                    raise StoreUnavailableError(f"Could not persist {self.name!r}: {exc}") from exc
                return updated.model_copy(deep=True)
        return None

    def soft_delete(self, document_id: str, actor: Optional[str] = None) -> bool:
        now = datetime.now(timezone.utc)
        updated = self.find_one_and_update(
            {"id": document_id, "is_deleted": False},
            {"is_deleted": True, "deleted_at": now, "deleted_by": actor},
        )
        return updated is not None

    def count_documents(self, query: Optional[Query] = None) -> int:
        with self._lock:
            return sum(1 for item in self._items.values() if matches(item.model_dump(), query))

    def distinct(self, field: str, query: Optional[Query] = None) -> List[Any]:
        values: List[Any] = []
        seen: set = set()
        with self._lock:
            for item in self._items.values():
                document = item.model_dump()
                if not matches(document, query):
                    continue
                value = document.get(field)
                if value is None or value in seen:
                    continue
                seen.add(value)
                values.append(value)
        return sorted(values)

    def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        with self._lock:
            documents = [item.model_dump() for item in self._items.values()]
        return run_pipeline(documents, pipeline)

    @staticmethod
    def _key(document: BaseModel) -> str:
        key = getattr(document, "id", None)
        if not isinstance(key, str) or not key:
            raise ValueError("Documents must carry a non-empty string id.")
        return key

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {key: item.model_dump(mode="json") for key, item in self._items.items()}
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Ignoring unreadable collection file %s",
                self.persistence_path,
                extra={"reason": "unreadable"},
            )
            data = {}

        for key, payload in data.items():
            self._items[key] = self.model.model_validate(payload)


@dataclass
class DocumentStore:
    sensor_data: DocumentCollection[SensorDataRecord]
    users: DocumentCollection[AccountRecord]
    admins: DocumentCollection[AccountRecord]


def open_store(root_path: Optional[Path] = None) -> DocumentStore:
    def _path(name: str) -> Optional[Path]:
        return root_path / f"{name}.json" if root_path else None

    return DocumentStore(
        sensor_data=DocumentCollection("sensor_data", SensorDataRecord, _path("sensor_data")),
        users=DocumentCollection("users", AccountRecord, _path("users")),
        admins=DocumentCollection("admins", AccountRecord, _path("admins")),
    )


@lru_cache
def build_default_store(path: Optional[str] = None) -> DocumentStore:
    settings = get_settings()
    store_path = settings.store_path if path is None else path
    return open_store(Path(store_path) if store_path else None)
