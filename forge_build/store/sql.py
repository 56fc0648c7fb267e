"""SQLAlchemy-backed object store.

Resources are stored as JSON documents, one row each. The store keeps
the semantics controllers rely on:

- resourceVersion bumps on every write, generation on every spec change
- merge patches can be made conditional on a resourceVersion
- delete only marks objects that still carry finalizers
- removing an object garbage-collects the objects it owns
- watch handlers are called after the write has committed
"""

from __future__ import annotations

import copy
import logging
import secrets
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session, sessionmaker

from forge_build.config import get_settings
from forge_build.db import (
    create_all_tables,
    get_engine,
    get_session,
    get_session_factory,
    is_memory_url,
)
from forge_build.store.client import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ObjectStore,
    WatchEvent,
    WatchEventType,
    WatchHandler,
    match_labels,
    now_timestamp,
)
from forge_build.store.models import ResourceRecord
from forge_build.store.patch import apply_merge_patch
from forge_build.store.unstructured import GroupVersionKind, Unstructured

logger = logging.getLogger(__name__)

# Metadata a patch may not change.
_SERVER_FIELDS = (
    "name",
    "namespace",
    "uid",
    "creationTimestamp",
    "deletionTimestamp",
    "generation",
    "resourceVersion",
)


class SQLObjectStore(ObjectStore):
    """ObjectStore persisting resources through SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self._watch_lock = threading.Lock()
        self._handlers: dict[tuple[str, str], list[WatchHandler]] = {}

    # Reads

    def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> Unstructured:
        with self._lock, get_session(self._session_factory) as session:
            record = self._find(session, gvk, namespace, name)
            if record is None:
                raise NotFoundError(gvk, namespace, name)
            return _to_object(record, gvk)

    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[Unstructured]:
        with self._lock, get_session(self._session_factory) as session:
            stmt = select(ResourceRecord).where(
                ResourceRecord.group == gvk.group,
                ResourceRecord.kind == gvk.kind,
            )
            if namespace is not None:
                stmt = stmt.where(ResourceRecord.namespace == namespace)
            stmt = stmt.order_by(ResourceRecord.namespace, ResourceRecord.name)
            objects = [_to_object(r, gvk) for r in session.scalars(stmt)]
        return [obj for obj in objects if match_labels(obj, labels)]

    # Writes

    def create(self, obj: Unstructured) -> Unstructured:
        document = copy.deepcopy(obj.object)
        meta = document.setdefault("metadata", {})
        if not meta.get("name"):
            prefix = meta.get("generateName")
            if not prefix:
                raise ValueError("metadata.name or metadata.generateName is required")
            meta["name"] = prefix + secrets.token_hex(3)[:5]
        gvk = GroupVersionKind.from_api_version(
            document.get("apiVersion", ""), document.get("kind", "")
        )
        if not gvk.kind:
            raise ValueError("kind is required")
        namespace = meta.get("namespace", "")

        events: list[WatchEvent] = []
        with self._lock, get_session(self._session_factory) as session:
            if self._find(session, gvk, namespace, meta["name"]) is not None:
                raise AlreadyExistsError(gvk, namespace, meta["name"])
            meta["uid"] = str(uuid.uuid4())
            meta["resourceVersion"] = "1"
            meta["generation"] = 1
            meta["creationTimestamp"] = now_timestamp()
            meta.pop("deletionTimestamp", None)
            record = ResourceRecord(
                group=gvk.group,
                kind=gvk.kind,
                namespace=namespace,
                name=meta["name"],
                uid=meta["uid"],
                resource_version=1,
                document=document,
            )
            session.add(record)
            created = _to_object(record)
            events.append(WatchEvent(WatchEventType.ADDED, created.deepcopy()))
        logger.debug("Created %s %s/%s", gvk.kind, namespace, meta["name"])
        self._dispatch(events)
        return created

    def patch(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        patch: dict[str, Any],
        resource_version: str | None = None,
    ) -> Unstructured:
        events: list[WatchEvent] = []
        with self._lock, get_session(self._session_factory) as session:
            record = self._find(session, gvk, namespace, name)
            if record is None:
                raise NotFoundError(gvk, namespace, name)
            if resource_version is not None and resource_version != str(
                record.resource_version
            ):
                raise ConflictError(gvk, namespace, name)

            current = record.document
            updated = apply_merge_patch(current, patch)
            current_meta = current.get("metadata", {})
            meta = updated.setdefault("metadata", {})
            for key in _SERVER_FIELDS:
                if key in current_meta:
                    meta[key] = current_meta[key]
                else:
                    meta.pop(key, None)
            if updated == current:
                return _to_object(record, gvk)

            record.resource_version += 1
            meta["resourceVersion"] = str(record.resource_version)
            if updated.get("spec") != current.get("spec"):
                meta["generation"] = int(current_meta.get("generation", 1)) + 1

            if meta.get("deletionTimestamp") and not meta.get("finalizers"):
                record.document = updated
                result = _to_object(record, gvk)
                self._remove(session, record, events)
            else:
                record.document = updated
                result = _to_object(record, gvk)
                events.append(WatchEvent(WatchEventType.MODIFIED, result.deepcopy()))
        self._dispatch(events)
        return result

    def delete(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        events: list[WatchEvent] = []
        with self._lock, get_session(self._session_factory) as session:
            record = self._find(session, gvk, namespace, name)
            if record is None:
                raise NotFoundError(gvk, namespace, name)
            self._delete_record(session, record, events)
        self._dispatch(events)

    # Watches

    def watch(self, group: str, kind: str, handler: WatchHandler) -> Callable[[], None]:
        key = (group, kind)
        with self._watch_lock:
            self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            with self._watch_lock:
                handlers = self._handlers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    # Internals

    def _find(
        self, session: Session, gvk: GroupVersionKind, namespace: str, name: str
    ) -> ResourceRecord | None:
        stmt = select(ResourceRecord).where(
            ResourceRecord.group == gvk.group,
            ResourceRecord.kind == gvk.kind,
            ResourceRecord.namespace == namespace,
            ResourceRecord.name == name,
        )
        return session.scalars(stmt).first()

    def _delete_record(
        self, session: Session, record: ResourceRecord, events: list[WatchEvent]
    ) -> None:
        document = copy.deepcopy(record.document)
        meta = document.setdefault("metadata", {})
        if not meta.get("finalizers"):
            self._remove(session, record, events)
            return
        if meta.get("deletionTimestamp"):
            return
        meta["deletionTimestamp"] = now_timestamp()
        record.resource_version += 1
        meta["resourceVersion"] = str(record.resource_version)
        record.document = document
        events.append(WatchEvent(WatchEventType.MODIFIED, _to_object(record)))

    def _remove(
        self, session: Session, record: ResourceRecord, events: list[WatchEvent]
    ) -> None:
        removed = _to_object(record)
        session.delete(record)
        session.flush()
        events.append(WatchEvent(WatchEventType.DELETED, removed))
        logger.debug("Removed %s %s/%s", removed.kind, removed.namespace, removed.name)

        stmt = select(ResourceRecord)
        if removed.namespace:
            stmt = stmt.where(ResourceRecord.namespace == removed.namespace)
        for dependent in list(session.scalars(stmt)):
            if inspect(dependent).was_deleted:
                continue
            refs = dependent.document.get("metadata", {}).get("ownerReferences") or []
            if any(ref.get("uid") == removed.uid for ref in refs):
                self._delete_record(session, dependent, events)

    def _dispatch(self, events: list[WatchEvent]) -> None:
        for event in events:
            gvk = event.object.gvk
            with self._watch_lock:
                handlers = list(self._handlers.get((gvk.group, gvk.kind), []))
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Watch handler failed for %s %s/%s",
                        gvk.kind,
                        event.object.namespace,
                        event.object.name,
                    )


def open_store(db_url: str | None = None) -> SQLObjectStore:
    """Open the store at db_url, creating the database and tables if needed.

    Args:
        db_url: Database URL. If not provided, uses settings default.
    """
    if db_url is None:
        db_url = get_settings().db_url
    if db_url.startswith("sqlite:///") and not is_memory_url(db_url):
        Path(db_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(db_url)
    create_all_tables(engine)
    return SQLObjectStore(get_session_factory(engine))


def _to_object(record: ResourceRecord, gvk: GroupVersionKind | None = None) -> Unstructured:
    document = copy.deepcopy(record.document)
    if gvk is not None and gvk.version:
        document["apiVersion"] = gvk.api_version
    return Unstructured(document)


__all__ = ["SQLObjectStore", "open_store"]
