"""
Sealbox Hash Index

Persistent mapping from a short reference hash to the full content hash,
public metadata hash, metadata digest and file attributes of a sealed
message.

- Merge-on-write upserts: fields left unset inherit the stored values
- Writers are serialized; readers use an immutable snapshot that is
  swapped wholesale after each write (copy-on-write)
- Backends: JSON file (atomic replace), SQLite, in-memory
- A corrupted backing store is quarantined, logged and reset to empty
"""

import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .config import SealingConfig
from .exceptions import StorageError, ValidationError

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None

logger = logging.getLogger(__name__)


def is_empty_digest(digest: Optional[str]) -> bool:
    """True for "", "0x" and all-zero digests, which never match a record."""
    if digest is None:
        return True
    value = digest.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return not value or set(value) == {"0"}


@dataclass(frozen=True)
class HashMappingRecord:
    """
    One index record.

    When passed to HashIndex.upsert(), every field other than short_hash
    may be None, meaning "keep the stored value".
    """

    short_hash: str
    full_hash: Optional[str] = None
    public_hash: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    metadata_digest: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Persisted form; unset optional fields are omitted."""
        data: Dict[str, Any] = {
            "shortHash": self.short_hash,
            "fullHash": self.full_hash,
        }
        optional = {
            "publicHash": self.public_hash,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "metadataDigest": self.metadata_digest,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        data["updatedAt"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HashMappingRecord":
        updated_at = data.get("updatedAt")
        file_size = data.get("fileSize")
        try:
            return cls(
                short_hash=data["shortHash"],
                full_hash=data.get("fullHash"),
                public_hash=data.get("publicHash"),
                file_name=data.get("fileName"),
                file_size=int(file_size) if file_size is not None else None,
                mime_type=data.get("mimeType"),
                metadata_digest=data.get("metadataDigest"),
                updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid mapping record: {e}")


def _is_valid_store(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    for key, value in data.items():
        if not isinstance(value, dict):
            return False
        if value.get("shortHash") != key or not isinstance(value.get("fullHash"), str):
            return False
        try:
            HashMappingRecord.from_dict(value)
        except ValidationError:
            return False
    return True


@contextmanager
def _file_lock(path: Path):
    """Exclusive lock on a sidecar file, held across processes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+") as handle:
        if fcntl is not None:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


# =============================================================================
# Backends
# =============================================================================


class IndexBackend(ABC):
    """Storage behind the hash index, holding the persisted form."""

    @abstractmethod
    def load(self) -> Dict[str, Dict[str, Any]]:
        """Read the whole store. Missing or corrupted stores read as empty."""
        pass

    @abstractmethod
    def save(self, store: Dict[str, Dict[str, Any]], changed: Optional[str] = None) -> None:
        """Persist the store; changed names the single record that differs."""
        pass

    @contextmanager
    def locked(self):
        """Hold the store exclusively across a read-merge-write."""
        yield

    def close(self) -> None:
        pass


class MemoryBackend(IndexBackend):
    """Non-persistent backend for tests and ephemeral use."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._data = json.loads(json.dumps(initial or {}))

    def load(self) -> Dict[str, Dict[str, Any]]:
        return json.loads(json.dumps(self._data))

    def save(self, store: Dict[str, Dict[str, Any]], changed: Optional[str] = None) -> None:
        self._data = json.loads(json.dumps(store))


def _quarantine(path: Path) -> Optional[Path]:
    """Move a corrupted file aside so it can be inspected later."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    try:
        os.replace(path, target)
        return target
    except OSError as e:
        logger.error(f"Failed to quarantine corrupted index {path}: {e}")
        return None


class JsonFileBackend(IndexBackend):
    """
    Single JSON document mapping short hash to record.

    Writes go to a temporary file in the same directory, are fsynced and
    then renamed over the target, so readers never see a partial file.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock_path = self._path.with_name(f"{self._path.name}.lock")

    @property
    def path(self) -> Path:
        return self._path

    def locked(self):
        return _file_lock(self._lock_path)

    def load(self) -> Dict[str, Dict[str, Any]]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageError(f"Failed to read index: {e}", operation="load", original_error=e)

        if not raw.strip():
            return {}

        try:
            data = json.loads(raw)
        except ValueError as e:
            data = None
            logger.warning(f"Corrupted index detected ({e}), resetting store")
        else:
            if data is None:
                return {}
            if not _is_valid_store(data):
                logger.warning("Index has an invalid structure, resetting store")
                data = None

        if data is None:
            moved = _quarantine(self._path)
            if moved:
                logger.warning(f"Corrupted index moved to {moved}")
            self.save({})
            return {}
        return data

    def save(self, store: Dict[str, Dict[str, Any]], changed: Optional[str] = None) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(store, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.error(f"Failed to persist index: {e}")
            raise StorageError(f"Failed to persist index: {e}", operation="save", original_error=e)


class SqliteBackend(IndexBackend):
    """SQLite backend; each record is one row holding its JSON document."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._lock_path = self._db_path.with_name(f"{self._db_path.name}.lock")
        self._local = threading.local()
        self._initialize_database()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
            )
        return self._local.connection

    def locked(self):
        return _file_lock(self._lock_path)

    @contextmanager
    def _transaction(self):
        """Context manager for transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    def _initialize_database(self) -> None:
        """Initialize database schema, resetting a corrupted file."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_schema()
        except sqlite3.DatabaseError as e:
            logger.warning(f"Corrupted index database detected ({e}), resetting store")
            self.close()
            moved = _quarantine(self._db_path)
            if moved:
                logger.warning(f"Corrupted index moved to {moved}")
            self._create_schema()

    def _create_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mappings (
                    short_hash TEXT PRIMARY KEY,
                    metadata_digest TEXT,
                    record TEXT NOT NULL  -- JSON object
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_mappings_digest ON mappings(metadata_digest)"
            )

    def load(self) -> Dict[str, Dict[str, Any]]:
        try:
            rows = self._get_connection().execute(
                "SELECT short_hash, record FROM mappings"
            ).fetchall()
            store = {short_hash: json.loads(record) for short_hash, record in rows}
        except (sqlite3.DatabaseError, ValueError) as e:
            logger.warning(f"Corrupted index database detected ({e}), resetting store")
            self.close()
            _quarantine(self._db_path)
            self._create_schema()
            return {}

        if not _is_valid_store(store):
            logger.warning("Index database has invalid records, resetting store")
            with self._transaction() as conn:
                conn.execute("DELETE FROM mappings")
            return {}
        return store

    def save(self, store: Dict[str, Dict[str, Any]], changed: Optional[str] = None) -> None:
        try:
            with self._transaction() as conn:
                if changed is None:
                    conn.execute("DELETE FROM mappings")
                    keys = list(store.keys())
                else:
                    keys = [changed]
                for key in keys:
                    record = store[key]
                    digest = record.get("metadataDigest")
                    conn.execute(
                        """
                        INSERT INTO mappings (short_hash, metadata_digest, record)
                        VALUES (?, ?, ?)
                        ON CONFLICT(short_hash) DO UPDATE SET
                            metadata_digest = excluded.metadata_digest,
                            record = excluded.record
                        """,
                        (key, digest.lower() if digest else None, json.dumps(record)),
                    )
        except sqlite3.Error as e:
            logger.error(f"Failed to persist index: {e}")
            raise StorageError(f"Failed to persist index: {e}", operation="save", original_error=e)

    def close(self) -> None:
        """Close database connection."""
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None


def create_backend(config: SealingConfig) -> IndexBackend:
    """Create the index backend named in the configuration."""
    if config.index_backend == "memory":
        return MemoryBackend()
    if config.index_backend == "sqlite":
        return SqliteBackend(config.resolved_index_path)
    return JsonFileBackend(config.resolved_index_path)


# =============================================================================
# Hash Index
# =============================================================================


class HashIndex:
    """
    Short-hash index over sealed messages.

    Owns its backend exclusively; callers only ever see record values.
    """

    def __init__(self, backend: IndexBackend):
        self._backend = backend
        self._write_lock = threading.Lock()
        self._snapshot: Dict[str, HashMappingRecord] = {}
        self.reload()

    @classmethod
    def from_config(cls, config: SealingConfig) -> "HashIndex":
        return cls(create_backend(config))

    def reload(self) -> None:
        """Re-read the backing store into a fresh snapshot."""
        with self._write_lock:
            self._snapshot = self._read_store()
            logger.info(f"Loaded {len(self._snapshot)} mapping records")

    def _read_store(self) -> Dict[str, HashMappingRecord]:
        data = self._backend.load()
        return {key: HashMappingRecord.from_dict(value) for key, value in data.items()}

    def upsert(self, record: Union[HashMappingRecord, Mapping[str, Any]]) -> HashMappingRecord:
        """
        Merge a record into the index.

        Args:
            record: Record (or its persisted dict form); unset fields inherit

        Returns:
            The merged record as stored

        Raises:
            ValidationError: Missing short hash, or missing full hash on a new record
        """
        if not isinstance(record, HashMappingRecord):
            record = HashMappingRecord.from_dict(record)

        short_hash = (record.short_hash or "").strip()
        if not short_hash:
            raise ValidationError("shortHash is required", field="shortHash")

        full_hash = record.full_hash.strip() if record.full_hash is not None else None
        if full_hash == "":
            raise ValidationError("fullHash must not be empty", field="fullHash")

        # Merge against the stored state, not our snapshot; other
        # processes may share the backing store
        with self._write_lock, self._backend.locked():
            current = self._read_store()
            existing = current.get(short_hash)

            if full_hash is None:
                if existing is None:
                    raise ValidationError("fullHash is required", field="fullHash")
                full_hash = existing.full_hash

            def pick(new, old):
                return new if new is not None else old

            def pick_str(new, old):
                return new.strip() if new is not None else old

            merged = HashMappingRecord(
                short_hash=short_hash,
                full_hash=full_hash,
                public_hash=pick_str(record.public_hash, existing and existing.public_hash),
                file_name=pick(record.file_name, existing and existing.file_name),
                file_size=pick(record.file_size, existing and existing.file_size),
                mime_type=pick(record.mime_type, existing and existing.mime_type),
                metadata_digest=pick_str(
                    record.metadata_digest, existing and existing.metadata_digest
                ),
                updated_at=datetime.now(timezone.utc),
            )

            updated = dict(current)
            updated[short_hash] = merged
            self._backend.save(
                {key: value.to_dict() for key, value in updated.items()},
                changed=short_hash,
            )
            self._snapshot = updated

        logger.debug(f"Upserted mapping: {short_hash}")
        return merged

    def get(self, short_hash: str) -> Optional[HashMappingRecord]:
        key = (short_hash or "").strip()
        if not key:
            return None
        return self._snapshot.get(key)

    def find_by_metadata_digest(self, digest: str) -> Optional[HashMappingRecord]:
        """Case-insensitive lookup by metadata digest; empty digests never match."""
        if is_empty_digest(digest):
            return None
        wanted = digest.strip().lower()
        for record in self._snapshot.values():
            if record.metadata_digest and record.metadata_digest.lower() == wanted:
                return record
        return None

    def list_all(self) -> List[HashMappingRecord]:
        return list(self._snapshot.values())

    def export(self) -> Dict[str, Dict[str, Any]]:
        """Return the persisted form of the index."""
        return {key: value.to_dict() for key, value in self._snapshot.items()}

    def __len__(self) -> int:
        return len(self._snapshot)

    def close(self) -> None:
        self._backend.close()
