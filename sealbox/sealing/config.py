"""
Sealing Configuration

Immutable configuration for the sealing pipeline. Constructed once at
startup and passed by reference to every component that needs it.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from ..utils.paths import get_content_dir, get_data_dir, get_index_path
from .exceptions import ConfigurationError

INDEX_BACKENDS = ("json", "sqlite", "memory")
SECRET_CHANNELS = ("env",)


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class SealingConfig:
    """Configuration for the sealing pipeline."""

    # Storage
    data_dir: Path = field(default_factory=get_data_dir)
    index_backend: str = "json"  # json, sqlite, memory
    index_path: Optional[Path] = None
    content_dir: Optional[Path] = None
    short_hash_length: int = 16

    # Secret source (names only, never values)
    secret_channel: str = "env"
    key_part_a_var: str = "SEALBOX_ESCROW_KEY_PART_A"
    key_part_b_var: str = "SEALBOX_ESCROW_KEY_PART_B"
    key_version_var: str = "SEALBOX_ESCROW_KEY_VERSION"

    # Metadata
    include_preview: bool = False

    # External collaborators
    gateway_urls: Tuple[str, ...] = ()
    upload_url: Optional[str] = None
    escrow_url: Optional[str] = None
    request_timeout: float = 15.0  # seconds

    def __post_init__(self):
        if self.index_backend not in INDEX_BACKENDS:
            raise ConfigurationError(
                f"Unknown index backend: {self.index_backend}", setting="index_backend"
            )
        if self.secret_channel not in SECRET_CHANNELS:
            raise ConfigurationError(
                f"Key shares may only be supplied through the environment, "
                f"not '{self.secret_channel}'",
                setting="secret_channel",
            )
        if not 4 <= self.short_hash_length <= 64:
            raise ConfigurationError(
                "short_hash_length must be between 4 and 64", setting="short_hash_length"
            )

    @property
    def resolved_index_path(self) -> Path:
        if self.index_path:
            return self.index_path
        if self.data_dir:
            suffix = "db" if self.index_backend == "sqlite" else "json"
            return self.data_dir / f"metadata-mapping.{suffix}"
        return get_index_path(self.index_backend)

    @property
    def resolved_content_dir(self) -> Path:
        if self.content_dir:
            return self.content_dir
        if self.data_dir:
            return self.data_dir / "content"
        return get_content_dir()

    @classmethod
    def from_env(cls) -> "SealingConfig":
        """Create configuration from environment variables."""
        gateways = os.getenv("SEALBOX_GATEWAY_URLS", "")
        index_path = os.getenv("SEALBOX_INDEX_PATH")
        content_dir = os.getenv("SEALBOX_CONTENT_DIR")

        try:
            short_hash_length = int(os.getenv("SEALBOX_SHORT_HASH_LENGTH", "16"))
            request_timeout = float(os.getenv("SEALBOX_REQUEST_TIMEOUT", "15.0"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            data_dir=get_data_dir(),
            index_backend=os.getenv("SEALBOX_INDEX_BACKEND", "json"),
            index_path=Path(index_path) if index_path else None,
            content_dir=Path(content_dir) if content_dir else None,
            short_hash_length=short_hash_length,
            secret_channel=os.getenv("SEALBOX_SECRET_CHANNEL", "env"),
            include_preview=_env_flag("SEALBOX_INCLUDE_PREVIEW"),
            gateway_urls=tuple(url.strip() for url in gateways.split(",") if url.strip()),
            upload_url=os.getenv("SEALBOX_UPLOAD_URL"),
            escrow_url=os.getenv("SEALBOX_ESCROW_URL"),
            request_timeout=request_timeout,
        )
