"""Revisioned document store used as the persistence boundary.

Responsibilities:
- Hold per-entity collections of immutable document snapshots keyed by id.
- Enforce optimistic concurrency: a patch must be based on the current revision.
- Notify subscribers of inserts, updates, and removals.
- Optionally persist each collection as a JSON file under a root directory.

Key types:
- `Collection`: one entity collection with find/insert/patch/remove/subscribe.
- `DocumentStore`: the set of collections used by the ingestion pipeline.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import fields, replace
import json
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, TypeVar

from loguru import logger

from ..errors import DuplicateDocumentError, RevisionConflictError
from ..models.datatypes import (
    Book,
    Chapter,
    ChapterStatus,
    ImageAsset,
    RawFile,
    ReadingState,
    Subchapter,
)

EntityT = TypeVar("EntityT")

ChangeCallback = Callable[[str, Any], None]
Predicate = Callable[[Any], bool]


class Collection(Generic[EntityT]):
    """In-memory collection of revisioned documents."""

    def __init__(
        self,
        name: str,
        *,
        key: Callable[[EntityT], str],
        on_change: Callable[["Collection[EntityT]"], None] | None = None,
    ) -> None:
        """Initialize an empty collection with a key extractor and change hook."""

        self.name = name
        self._key = key
        self._on_change = on_change
        self._documents: dict[str, EntityT] = {}
        self._subscribers: list[tuple[ChangeCallback, Predicate | None]] = []

    async def find_one(self, doc_id: str) -> EntityT | None:
        """Return the latest snapshot for `doc_id`, or `None` when absent."""

        await asyncio.sleep(0)
        return self._documents.get(doc_id)

    async def find(self, predicate: Predicate | None = None) -> list[EntityT]:
        """Return snapshots matching `predicate` in insertion order."""

        await asyncio.sleep(0)
        return [doc for doc in self._documents.values() if predicate is None or predicate(doc)]

    async def insert(self, doc: EntityT) -> EntityT:
        """Insert a new document at revision 1 and return the stored snapshot."""

        doc_id = self._key(doc)
        if doc_id in self._documents:
            raise DuplicateDocumentError(f"Document `{doc_id}` already exists in `{self.name}`.")
        stored = replace(doc, revision=1)
        self._documents[doc_id] = stored
        self._notify("insert", stored)
        return stored

    async def bulk_insert(self, docs: Iterable[EntityT]) -> list[EntityT]:
        """Insert several documents, stopping at the first duplicate."""

        return [await self.insert(doc) for doc in docs]

    async def patch(self, doc: EntityT, **changes: Any) -> EntityT:
        """Apply `changes` to `doc` if it is still the current revision.

        Raises:
            RevisionConflictError: If another write happened since `doc` was read.
            KeyError: If the document no longer exists.
        """

        await asyncio.sleep(0)
        doc_id = self._key(doc)
        current = self._documents.get(doc_id)
        if current is None:
            raise KeyError(doc_id)
        seen_revision = getattr(doc, "revision")
        current_revision = getattr(current, "revision")
        if seen_revision != current_revision:
            raise RevisionConflictError(self.name, doc_id, seen_revision, current_revision)
        updated = replace(current, **changes, revision=current_revision + 1)
        self._documents[doc_id] = updated
        self._notify("update", updated)
        return updated

    async def remove(self, doc_id: str) -> bool:
        """Remove a document and return whether it existed."""

        removed = self._documents.pop(doc_id, None)
        if removed is None:
            return False
        self._notify("remove", removed)
        return True

    def subscribe(
        self,
        callback: ChangeCallback,
        predicate: Predicate | None = None,
    ) -> Callable[[], None]:
        """Register a change callback and return an unsubscribe function."""

        entry = (callback, predicate)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def snapshot(self) -> list[EntityT]:
        """Return all current documents without yielding to the event loop."""

        return list(self._documents.values())

    def load(self, docs: Iterable[EntityT]) -> None:
        """Replace collection contents with previously persisted snapshots."""

        self._documents = {self._key(doc): doc for doc in docs}

    def _notify(self, event: str, doc: EntityT) -> None:
        """Dispatch a change event to matching subscribers and the change hook."""

        for callback, predicate in list(self._subscribers):
            if predicate is None or predicate(doc):
                callback(event, doc)
        if self._on_change is not None:
            self._on_change(self)


class DocumentStore:
    """Collections used by ingestion, optionally persisted as JSON files."""

    def __init__(self, root: Path | None = None) -> None:
        """Create collections and load persisted documents under `root`."""

        self.root = root
        hook = self._persist if root is not None else None
        self.books: Collection[Book] = Collection("books", key=lambda doc: doc.id, on_change=hook)
        self.chapters: Collection[Chapter] = Collection(
            "chapters", key=lambda doc: doc.id, on_change=hook
        )
        self.images: Collection[ImageAsset] = Collection(
            "images", key=lambda doc: doc.id, on_change=hook
        )
        self.raw_files: Collection[RawFile] = Collection(
            "raw_files", key=lambda doc: doc.id, on_change=hook
        )
        self.reading_states: Collection[ReadingState] = Collection(
            "reading_states", key=lambda doc: doc.book_id, on_change=hook
        )
        if root is not None:
            self._load_all()

    def collections(self) -> tuple[Collection[Any], ...]:
        """Return all collections in a stable order."""

        return (self.books, self.chapters, self.images, self.raw_files, self.reading_states)

    def _collection_path(self, name: str) -> Path:
        """Return the JSON file path for a collection."""

        assert self.root is not None
        return self.root / f"{name}.json"

    def _persist(self, collection: Collection[Any]) -> None:
        """Write one collection to disk after a mutation."""

        path = self._collection_path(collection.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = [_to_payload(doc) for doc in collection.snapshot()]
        path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )

    def _load_all(self) -> None:
        """Load every persisted collection file that exists."""

        for collection in self.collections():
            path = self._collection_path(collection.name)
            if not path.exists():
                continue
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError(f"Store file `{path}` must contain a JSON list.")
            decoder = _DECODERS[collection.name]
            collection.load(decoder(item) for item in raw)
            logger.debug("Loaded {} document(s) into `{}`.", len(raw), collection.name)


def _to_payload(doc: Any) -> dict[str, Any]:
    """Convert a document dataclass into a JSON-compatible mapping."""

    payload: dict[str, Any] = {}
    for item in fields(doc):
        value = getattr(doc, item.name)
        if isinstance(value, bytes):
            value = base64.b64encode(value).decode("ascii")
        elif isinstance(value, ChapterStatus):
            value = value.value
        elif item.name == "subchapters":
            value = [_to_payload(subchapter) for subchapter in value]
        elif isinstance(value, tuple):
            value = list(value)
        payload[item.name] = value
    return payload


def _decode_book(payload: dict[str, Any]) -> Book:
    """Decode a persisted book payload."""

    return Book(
        id=payload["id"],
        title=payload["title"],
        author=payload["author"],
        cover=payload.get("cover"),
        total_words=int(payload.get("total_words", 0)),
        chapter_ids=tuple(payload.get("chapter_ids", ())),
        revision=int(payload.get("revision", 1)),
    )


def _decode_chapter(payload: dict[str, Any]) -> Chapter:
    """Decode a persisted chapter payload."""

    return Chapter(
        id=payload["id"],
        book_id=payload["book_id"],
        index=int(payload["index"]),
        title=payload["title"],
        status=ChapterStatus(payload.get("status", ChapterStatus.PENDING.value)),
        progress=int(payload.get("progress", 0)),
        content=tuple(payload.get("content", ())),
        densities=tuple(float(value) for value in payload.get("densities", ())),
        subchapters=tuple(Subchapter(**item) for item in payload.get("subchapters", ())),
        processing_speed=int(payload.get("processing_speed", 0)),
        last_tpm=int(payload.get("last_tpm", 0)),
        last_chunk_completed_at=int(payload.get("last_chunk_completed_at", 0)),
        revision=int(payload.get("revision", 1)),
    )


def _decode_image(payload: dict[str, Any]) -> ImageAsset:
    """Decode a persisted image payload."""

    return ImageAsset(
        id=payload["id"],
        book_id=payload["book_id"],
        filename=payload["filename"],
        data=base64.b64decode(payload["data"]),
        mime_type=payload["mime_type"],
        revision=int(payload.get("revision", 1)),
    )


def _decode_raw_file(payload: dict[str, Any]) -> RawFile:
    """Decode a persisted raw container payload."""

    return RawFile(
        id=payload["id"],
        data=base64.b64decode(payload["data"]),
        revision=int(payload.get("revision", 1)),
    )


def _decode_reading_state(payload: dict[str, Any]) -> ReadingState:
    """Decode a persisted reading state payload."""

    return ReadingState(
        book_id=payload["book_id"],
        current_chapter_id=payload.get("current_chapter_id"),
        current_word_index=int(payload.get("current_word_index", 0)),
        last_read=int(payload.get("last_read", 0)),
        highlights=tuple(payload.get("highlights", ())),
        revision=int(payload.get("revision", 1)),
    )


_DECODERS: dict[str, Callable[[dict[str, Any]], Any]] = {
    "books": _decode_book,
    "chapters": _decode_chapter,
    "images": _decode_image,
    "raw_files": _decode_raw_file,
    "reading_states": _decode_reading_state,
}
