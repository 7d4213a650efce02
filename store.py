"""
JSON document store.

One file per document: <data_dir>/<collection>/<doc_id>.json. Writes go to
a temp file in the same directory and are swapped in with os.replace, so a
reader never sees a half-written document. Each (collection, doc_id) pair
has its own lock; unrelated documents never contend.
"""

import json
import logging
import os
import re
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager

from errors import PersistenceError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.@-]{1,200}$")


class _DocLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class DocumentStore:
    def __init__(self, data_dir):
        self.data_dir = data_dir
        self._locks = {}
        self._locks_guard = threading.Lock()

    # === Internals ===

    @contextmanager
    def _locked(self, collection, doc_id):
        """Hold the document's lock. Entries are dropped once no thread holds or waits on them."""
        key = (collection, doc_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _DocLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def _path(self, collection, doc_id):
        if not _SAFE_ID.match(collection or ""):
            raise PersistenceError(f"Invalid collection name: {collection!r}")
        if not _SAFE_ID.match(doc_id or "") or doc_id in (".", ".."):
            raise PersistenceError(f"Invalid document id: {doc_id!r}")
        return os.path.join(self.data_dir, collection, f"{doc_id}.json")

    def _read(self, path):
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("store read failed | path=%s error=%s", path, e)
            raise PersistenceError(f"Failed to read {path}") from e

    def _write(self, path, doc):
        directory = os.path.dirname(path)
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(doc, f, indent=2, default=str)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error("store write failed | path=%s error=%s", path, e)
            raise PersistenceError(f"Failed to write {path}") from e

    # === Single-document operations ===

    def get(self, collection, doc_id):
        """Return the document dict, or None if it does not exist."""
        return self._read(self._path(collection, doc_id))

    def set(self, collection, doc_id, doc):
        path = self._path(collection, doc_id)
        with self._locked(collection, doc_id):
            self._write(path, doc)
        return doc

    def merge(self, collection, doc_id, patch):
        """Shallow-merge patch into the document, creating it if needed."""
        path = self._path(collection, doc_id)
        with self._locked(collection, doc_id):
            doc = self._read(path) or {}
            doc.update(patch)
            self._write(path, doc)
            return doc

    def create(self, collection, doc_id, doc):
        """Insert only if absent. Returns True when the document was written."""
        path = self._path(collection, doc_id)
        with self._locked(collection, doc_id):
            if os.path.exists(path):
                return False
            self._write(path, doc)
            return True

    def conditional_update(self, collection, doc_id, predicate, patch):
        """
        Compare-and-swap: apply patch only if predicate(current_doc) holds.

        patch may be a dict or a callable taking the current doc and
        returning a dict. Returns the updated document, or None when the
        document is missing or the predicate rejected it.
        """
        path = self._path(collection, doc_id)
        with self._locked(collection, doc_id):
            doc = self._read(path)
            if doc is None or not predicate(doc):
                return None
            changes = patch(doc) if callable(patch) else patch
            doc.update(changes)
            self._write(path, doc)
            return doc

    def transact(self, collection, doc_id, fn):
        """
        Read-modify-write under the document lock.

        fn(doc_or_None) returns (new_doc_or_None, result). A new_doc of None
        means nothing is written. Exceptions from fn propagate and leave the
        stored document untouched.
        """
        path = self._path(collection, doc_id)
        with self._locked(collection, doc_id):
            doc = self._read(path)
            new_doc, result = fn(doc)
            if new_doc is not None:
                self._write(path, new_doc)
            return result

    def delete(self, collection, doc_id):
        path = self._path(collection, doc_id)
        with self._locked(collection, doc_id):
            if not os.path.exists(path):
                return False
            try:
                os.unlink(path)
            except OSError as e:
                raise PersistenceError(f"Failed to delete {path}") from e
            return True

    # === Collections ===

    def append(self, collection, doc):
        """Append-only insert with a generated, time-ordered id."""
        doc_id = f"{int(time.time() * 1000):013d}_{uuid.uuid4().hex[:8]}"
        # Fresh id, so no other writer can race on this document.
        self._write(self._path(collection, doc_id), dict(doc, id=doc_id))
        return doc_id

    def ids(self, collection):
        directory = os.path.join(self.data_dir, collection)
        if not os.path.isdir(directory):
            return []
        return sorted(name[:-5] for name in os.listdir(directory) if name.endswith(".json"))

    def query(self, collection, where=None, order_by=None, reverse=False, limit=None):
        """
        Scan a collection.

        where: callable(doc) -> bool filter
        order_by: field name or callable(doc) used as the sort key
        """
        docs = []
        for doc_id in self.ids(collection):
            doc = self.get(collection, doc_id)
            if doc is None:
                continue  # deleted mid-scan
            if where is None or where(doc):
                docs.append(doc)

        if order_by is not None:
            key = order_by if callable(order_by) else (lambda d: d.get(order_by) or "")
            docs.sort(key=key, reverse=reverse)
        if limit is not None:
            docs = docs[:limit]
        return docs
