"""
Sealbox Key Material Provider

Loads the escrow key shares from the designated secret channel at startup
and derives per-message outer keys from them. Raw shares never leave this
module; callers only ever receive derived keys wrapped in SecretKey buffers
that can be wiped as soon as the wrap/unwrap call that needed them returns.
"""

import atexit
import binascii
import logging
import os
import secrets
import threading
from typing import Mapping, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import SealingConfig
from .exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


KEY_BYTES = 32  # AES-256
MIN_SHARE_BYTES = 16
OUTER_KEY_INFO_PREFIX = b"sealbox-escrow-outer:"


class SecretKey:
    """
    Mutable holder for key bytes that can be zeroed in place.

    Use as a context manager so the buffer is wiped when the block exits,
    including on exceptions and cancellation.
    """

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, material: bytes):
        self._buffer = bytearray(material)
        self._wiped = False

    @classmethod
    def generate(cls, length: int = KEY_BYTES) -> "SecretKey":
        """Generate a fresh random key."""
        return cls(secrets.token_bytes(length))

    @property
    def material(self) -> bytearray:
        if self._wiped:
            raise ValueError("Key material has been wiped")
        return self._buffer

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Overwrite the key bytes with zeros."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    def __len__(self) -> int:
        return len(self._buffer)

    def __enter__(self) -> "SecretKey":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"SecretKey(length={len(self._buffer)}, wiped={self._wiped})"


def _parse_share(name: str, raw: Optional[str]) -> bytearray:
    """Decode a hex key share read from the secret channel."""
    if raw is None or not raw.strip():
        raise ConfigurationError(f"Escrow key share missing: {name}", setting=name)

    value = raw.strip()
    if value.startswith(("file:", "@")) or os.sep in value:
        raise ConfigurationError(
            f"Escrow key share {name} must be supplied inline, not as a file reference",
            setting=name,
        )

    if value.lower().startswith("0x"):
        value = value[2:]

    try:
        share = bytearray(binascii.unhexlify(value))
    except (binascii.Error, ValueError):
        raise ConfigurationError(f"Escrow key share {name} is not valid hex", setting=name)

    if len(share) < MIN_SHARE_BYTES:
        raise ConfigurationError(
            f"Escrow key share {name} must be at least {MIN_SHARE_BYTES} bytes",
            setting=name,
        )
    return share


class KeyMaterialProvider:
    """
    Holds the escrow key shares for the process lifetime.

    Responsibilities:
    - Load both shares once from the environment, failing fast
    - Derive per-context outer keys (HKDF-SHA256, context bound into info)
    - Never export the raw shares
    - Zero the shares at interpreter exit
    """

    def __init__(
        self,
        config: SealingConfig,
        source: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize the provider.

        Args:
            config: Sealing configuration naming the secret variables
            source: Environment mapping to read from (defaults to os.environ)
        """
        self._config = config
        self._source = source if source is not None else os.environ
        self._part_a: Optional[bytearray] = None
        self._part_b: Optional[bytearray] = None
        self._key_version = 1
        self._lock = threading.Lock()
        self._loaded = False

    @classmethod
    def from_config(
        cls,
        config: SealingConfig,
        source: Optional[Mapping[str, str]] = None,
    ) -> "KeyMaterialProvider":
        """Create and load a provider."""
        provider = cls(config, source)
        provider.load()
        return provider

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def key_version(self) -> int:
        return self._key_version

    def load(self) -> None:
        """
        Read both key shares from the secret channel.

        Raises:
            ConfigurationError: If a share is absent or malformed, or the
                provider was already loaded
        """
        with self._lock:
            if self._loaded:
                raise ConfigurationError("Key material already loaded")

            cfg = self._config
            part_a = _parse_share(cfg.key_part_a_var, self._source.get(cfg.key_part_a_var))
            part_b = _parse_share(cfg.key_part_b_var, self._source.get(cfg.key_part_b_var))

            raw_version = self._source.get(cfg.key_version_var, "1")
            try:
                version = int(raw_version)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"{cfg.key_version_var} must be an integer", setting=cfg.key_version_var
                )
            if version < 1:
                raise ConfigurationError(
                    f"{cfg.key_version_var} must be positive", setting=cfg.key_version_var
                )

            self._part_a = part_a
            self._part_b = part_b
            self._key_version = version
            self._loaded = True
            atexit.register(self._zero_shares)

            logger.info(f"Escrow key material loaded (version={version})")

    def derive_outer_key(self, context_id: str) -> SecretKey:
        """
        Derive the outer (escrow layer) key for a message context.

        Args:
            context_id: Per-message context identifier

        Returns:
            SecretKey holding 32 derived bytes
        """
        if not self._loaded:
            raise ConfigurationError("Key material not loaded")
        if not context_id or not context_id.strip():
            raise ValidationError("context_id is required", field="context_id")

        ikm = self._part_a + self._part_b
        try:
            hkdf = HKDF(
                algorithm=hashes.SHA256(),
                length=KEY_BYTES,
                salt=f"sealbox-escrow-v{self._key_version}".encode(),
                info=OUTER_KEY_INFO_PREFIX + context_id.encode("utf-8"),
            )
            return SecretKey(hkdf.derive(ikm))
        finally:
            for i in range(len(ikm)):
                ikm[i] = 0

    def _zero_shares(self) -> None:
        for share in (self._part_a, self._part_b):
            if share is not None:
                for i in range(len(share)):
                    share[i] = 0

    def __repr__(self) -> str:
        return f"KeyMaterialProvider(loaded={self._loaded}, version={self._key_version})"
