"""
Sealbox Content-Addressed Storage

Put/get of immutable ciphertext blobs keyed by the SHA-256 of their bytes.
Identical bytes always land at the same address, so storage deduplicates
by construction. Every get() re-hashes what it returns.

Adapters:
- MemoryContentStore: process-local dictionary
- FileContentStore: sharded directory tree with atomic writes
- GatewayContentStore: remote storage network reached through HTTP gateways
"""

import hashlib
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import httpx

from .exceptions import (
    ConfigurationError,
    ContentNotFoundError,
    IntegrityError,
    StorageError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)


ADDRESS_RE = re.compile(r"^[0-9a-f]{64}$")


def content_address(data: bytes) -> str:
    """Content address of a blob: lowercase hex SHA-256."""
    return hashlib.sha256(data).hexdigest()


def normalize_address(address: str) -> str:
    """Validate and normalize a content address."""
    if not isinstance(address, str):
        raise ValidationError("Content address must be a string", field="address")
    value = address.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if not ADDRESS_RE.match(value):
        raise ValidationError(f"Malformed content address: {address!r}", field="address")
    return value


class ContentStore(ABC):
    """Content-addressed blob storage."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store bytes and return their content address."""
        pass

    @abstractmethod
    def get(self, address: str) -> bytes:
        """
        Fetch bytes by content address.

        Raises:
            ContentNotFoundError: If nothing is stored at the address
        """
        pass

    def exists(self, address: str) -> bool:
        try:
            self.get(address)
            return True
        except ContentNotFoundError:
            return False


class MemoryContentStore(ContentStore):
    """In-memory content store."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        address = content_address(data)
        with self._lock:
            self._blobs.setdefault(address, bytes(data))
        return address

    def get(self, address: str) -> bytes:
        address = normalize_address(address)
        with self._lock:
            data = self._blobs.get(address)
        if data is None:
            raise ContentNotFoundError(address)
        return data

    def exists(self, address: str) -> bool:
        return normalize_address(address) in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class FileContentStore(ContentStore):
    """
    Filesystem content store.

    Layout: <root>/<first 2 hex chars>/<address>.blob. Blobs are written to
    a temporary file in the shard, fsynced, then renamed into place.
    """

    def __init__(self, root: Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def put(self, data: bytes) -> str:
        address = content_address(data)
        path = self._get_blob_path(address)
        if path.exists():
            return address

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to store blob {address}: {e}", operation="put", original_error=e)

        logger.info(f"Stored blob: {address[:16]} (size={len(data)})")
        return address

    def get(self, address: str) -> bytes:
        address = normalize_address(address)
        path = self._get_blob_path(address)
        if not path.exists():
            raise ContentNotFoundError(address)

        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise ContentNotFoundError(address)
        except OSError as e:
            raise StorageError(f"Failed to read blob {address}: {e}", operation="get", original_error=e)

        if content_address(data) != address:
            logger.error(f"Content hash mismatch on disk: {address}")
            raise IntegrityError(f"Stored blob does not match its address: {address}")
        return data

    def exists(self, address: str) -> bool:
        return self._get_blob_path(normalize_address(address)).exists()

    def _get_blob_path(self, address: str) -> Path:
        """Get path for a blob file."""
        return self._root / address[:2] / f"{address}.blob"


class GatewayContentStore(ContentStore):
    """
    Remote content store reached through HTTP gateways.

    Reads try each gateway in order ({gateway}/{address}); a gateway that
    is down, errors, or serves bytes that do not hash to the address is
    skipped. Writes go to a single upload endpoint that must answer with
    the same address the bytes hash to locally.
    """

    def __init__(
        self,
        gateway_urls: Sequence[str],
        upload_url: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        if not gateway_urls:
            raise ConfigurationError("At least one gateway URL is required", setting="gateway_urls")
        self.gateway_urls: List[str] = [url.rstrip("/") for url in gateway_urls]
        self.upload_url = upload_url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close the client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def put(self, data: bytes) -> str:
        if not self.upload_url:
            raise ConfigurationError("No upload URL configured", setting="upload_url")

        address = content_address(data)
        try:
            response = self._client.post(
                self.upload_url,
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise TransientError(f"Upload failed: {e}", operation="put", original_error=e)

        if response.status_code >= 500:
            raise TransientError(f"Upload failed: HTTP {response.status_code}", operation="put")
        if response.status_code >= 400:
            raise StorageError(f"Upload rejected: HTTP {response.status_code}", operation="put")

        try:
            remote = response.json().get("address", "")
        except (ValueError, AttributeError) as e:
            raise StorageError(
                f"Upload endpoint returned a malformed response: {e}",
                operation="put",
                original_error=e,
            )

        try:
            remote_address = normalize_address(remote)
        except ValidationError:
            remote_address = None
        if remote_address != address:
            raise IntegrityError(
                "Upload endpoint returned a different address",
                details=f"expected={address} got={remote}",
            )
        return address

    def get(self, address: str) -> bytes:
        address = normalize_address(address)
        not_found = 0
        last_error: Optional[Exception] = None

        for gateway in self.gateway_urls:
            url = f"{gateway}/{address}"
            try:
                logger.debug(f"Fetching blob from {url}")
                response = self._client.get(url)
            except httpx.HTTPError as e:
                logger.warning(f"Gateway {gateway} failed: {e}")
                last_error = e
                continue

            if response.status_code == 404:
                not_found += 1
                continue
            if response.status_code >= 400:
                logger.warning(f"Gateway {gateway} returned HTTP {response.status_code}")
                last_error = TransientError(f"HTTP {response.status_code}", operation="get")
                continue

            data = response.content
            if content_address(data) != address:
                logger.warning(f"Gateway {gateway} served bytes not matching {address[:16]}")
                last_error = IntegrityError(f"Gateway served mismatched content: {gateway}")
                continue
            return data

        if not_found == len(self.gateway_urls):
            raise ContentNotFoundError(address)
        raise TransientError(
            f"All gateways failed for {address}",
            operation="get",
            original_error=last_error,
        )
