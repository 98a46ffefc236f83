# artifacts.py
from __future__ import annotations

import errno
import hashlib
import json
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterator, Optional

from .errors import ArtifactNotFound, TransientStoreError
from .model import ArtifactRef, now_utc

# ---------------------------------------------------------------------
# Content-addressed artifact store
# ---------------------------------------------------------------------
# Layout:
#   root/
#     objects/<key[:2]>/<key>      raw bytes, written once, never modified
#     refs/<key>.json              {"refcount", "size", "produced_by", "name", "created_at"}
#
# key = sha256(content). Identical content from any job maps to one object.
# Objects are created by hard-linking a fully written temp file into place,
# so a concurrent put of the same content sees FileExistsError and becomes
# a store hit instead of a second write.
# ---------------------------------------------------------------------

DEFAULT_STORE_DIR = ".shipline/artifacts"

# errnos that mean "the store is there but the operation failed for good"
_PERMANENT_ERRNOS = {errno.ENOENT, errno.EEXIST, errno.EISDIR, errno.ENOTDIR}


def content_key(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _transient(exc: OSError, action: str) -> TransientStoreError:
    return TransientStoreError(f"artifact store {action} failed: {exc}")


class ArtifactStore:
    """
    File-based content-addressed store shared by every job of every run.
    Thread-safe; callers on the event loop go through asyncio.to_thread.
    """

    def __init__(self, root: str | Path = DEFAULT_STORE_DIR):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()
        try:
            (self.root / "objects").mkdir(parents=True, exist_ok=True)
            (self.root / "refs").mkdir(parents=True, exist_ok=True)
            (self.root / "tmp").mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise _transient(e, "init") from e

    # ---- paths ----

    def object_path(self, key: str) -> Path:
        return self.root / "objects" / key[:2] / key

    def _meta_path(self, key: str) -> Path:
        return self.root / "refs" / f"{key}.json"

    # ---- reads ----

    def contains(self, key: str) -> bool:
        return self.object_path(key).is_file()

    def get(self, ref: ArtifactRef | str) -> bytes:
        key = ref.key if isinstance(ref, ArtifactRef) else ref
        try:
            return self.object_path(key).read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(key) from None
        except OSError as e:
            raise _transient(e, "read") from e

    def metadata(self, key: str) -> Dict:
        try:
            return json.loads(self._meta_path(key).read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ArtifactNotFound(key) from None

    def refcount(self, key: str) -> int:
        try:
            return int(self.metadata(key).get("refcount", 0))
        except ArtifactNotFound:
            return 0

    def iter_keys(self) -> Iterator[str]:
        for p in sorted((self.root / "objects").glob("*/*")):
            if p.is_file():
                yield p.name

    def __len__(self) -> int:
        return sum(1 for _ in self.iter_keys())

    # ---- writes ----

    def put(self, data: bytes, *, produced_by: Optional[str] = None,
            name: Optional[str] = None) -> ArtifactRef:
        """
        Store `data` under its content hash and return a ref to it.
        Storing content that is already present only bumps its refcount.
        """
        key = content_key(data)
        created = self._create_object(key, data)
        self._bump_refcount(key, size=len(data), produced_by=produced_by, name=name)
        if not created and produced_by is None:
            produced_by = self.metadata(key).get("produced_by")
        return ArtifactRef(key=key, produced_by=produced_by, name=name)

    def put_file(self, path: str | Path, *, produced_by: Optional[str] = None,
                 name: Optional[str] = None) -> ArtifactRef:
        p = Path(path)
        try:
            data = p.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(str(p), detail="output file missing") from None
        return self.put(data, produced_by=produced_by, name=name or p.name)

    def _create_object(self, key: str, data: bytes) -> bool:
        """Atomic check-and-create. Returns False when the object already existed."""
        final = self.object_path(key)
        if final.is_file():
            return False

        tmp = self.root / "tmp" / f"{key}.{uuid.uuid4().hex}"
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            try:
                os.link(tmp, final)
            except FileExistsError:
                return False
            return True
        except OSError as e:
            if e.errno in _PERMANENT_ERRNOS:
                raise
            raise _transient(e, "write") from e
        finally:
            tmp.unlink(missing_ok=True)

    def _bump_refcount(self, key: str, *, size: int, produced_by: Optional[str],
                       name: Optional[str]) -> None:
        meta_path = self._meta_path(key)
        with self._lock:
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                meta = {
                    "key": key,
                    "size": size,
                    "produced_by": produced_by,
                    "name": name,
                    "created_at": now_utc().isoformat(),
                    "refcount": 0,
                }
            meta["refcount"] = int(meta.get("refcount", 0)) + 1

            tmp = meta_path.with_suffix(f".json.{uuid.uuid4().hex}.tmp")
            try:
                tmp.write_text(json.dumps(meta, sort_keys=True, indent=2), encoding="utf-8")
                tmp.replace(meta_path)
            except OSError as e:
                raise _transient(e, "refcount update") from e
            finally:
                tmp.unlink(missing_ok=True)
