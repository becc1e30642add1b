"""
Sealbox Envelope Wrapper

Wraps the per-message session key in an ordered stack of layers:

  1. ESCROW    - AES-256-GCM under the outer key released by the escrow gate
  2. RECIPIENT - X25519 ephemeral key agreement + HKDF + AES-256-GCM (ECIES style)

Layers are applied in that order and removed in reverse. The Envelope
records the applied layers as descriptors; each unwrap accepts only the
current top layer, so the order is enforced by the data structure and a
recipient layer can only ever surround an escrow-wrapped key.
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .cipher import NONCE_SIZE, TAG_SIZE, KeyLike, key_bytes
from .exceptions import UnwrapError, ValidationError
from .keys import KEY_BYTES, SecretKey

logger = logging.getLogger(__name__)


RECIPIENT_KEY_BYTES = 32
RECIPIENT_HKDF_INFO = b"sealbox-recipient-v1"


class LayerKind(str, Enum):
    """Kind of envelope layer."""

    ESCROW = "escrow"
    RECIPIENT = "recipient"


# Order of application; removal is the reverse
LAYER_ORDER: Tuple[LayerKind, ...] = (LayerKind.ESCROW, LayerKind.RECIPIENT)


@dataclass(frozen=True)
class LayerDescriptor:
    """Public parameters of one applied layer."""

    kind: LayerKind
    iv: bytes
    auth_tag: bytes
    context_id: Optional[str] = None  # escrow layer
    key_version: Optional[int] = None  # escrow layer
    ephemeral_public_key: Optional[bytes] = None  # recipient layer

    def associated_data(self) -> bytes:
        """Bind the descriptor fields into the layer's AEAD."""
        if self.kind == LayerKind.ESCROW:
            return (
                b"sealbox-layer:escrow:"
                + (self.context_id or "").encode("utf-8")
                + b":"
                + str(self.key_version or 0).encode()
            )
        return b"sealbox-layer:recipient:" + (self.ephemeral_public_key or b"")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
        }
        if self.context_id is not None:
            data["contextId"] = self.context_id
        if self.key_version is not None:
            data["keyVersion"] = self.key_version
        if self.ephemeral_public_key is not None:
            data["ephemeralPublicKey"] = self.ephemeral_public_key.hex()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayerDescriptor":
        try:
            epk = data.get("ephemeralPublicKey")
            return cls(
                kind=LayerKind(data["kind"]),
                iv=bytes.fromhex(data["iv"]),
                auth_tag=bytes.fromhex(data["authTag"]),
                context_id=data.get("contextId"),
                key_version=data.get("keyVersion"),
                ephemeral_public_key=bytes.fromhex(epk) if epk else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid layer descriptor: {e}", field="layers")


@dataclass(frozen=True)
class Envelope:
    """A wrapped session key and the ordered layers applied to it."""

    layers: Tuple[LayerDescriptor, ...]
    payload: bytes

    def __post_init__(self):
        kinds = tuple(layer.kind for layer in self.layers)
        if not kinds or kinds != LAYER_ORDER[: len(kinds)]:
            raise ValidationError(
                f"Envelope layers out of order: {[k.value for k in kinds]}", field="layers"
            )

    @property
    def top(self) -> LayerKind:
        return self.layers[-1].kind

    @property
    def escrow_layer(self) -> LayerDescriptor:
        return self.layers[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layers": [layer.to_dict() for layer in self.layers],
            "payload": self.payload.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        try:
            layers = tuple(LayerDescriptor.from_dict(item) for item in data["layers"])
            payload = bytes.fromhex(data["payload"])
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid envelope: {e}", field="envelope")
        return cls(layers=layers, payload=payload)


def generate_recipient_keypair() -> Tuple[bytes, bytes]:
    """Generate an X25519 recipient key pair as raw (public, private) bytes."""
    private_key = X25519PrivateKey.generate()

    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return public_bytes, private_bytes


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _recipient_key(shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=ephemeral_public + recipient_public,
        info=RECIPIENT_HKDF_INFO,
    )
    return hkdf.derive(shared_secret)


class EnvelopeWrapper:
    """
    Applies and removes envelope layers around a session key.

    Every failure (tamper, wrong key, wrong layer) raises UnwrapError;
    no method ever returns partially unwrapped key material.
    """

    def wrap_for_escrow(
        self,
        session_key: KeyLike,
        outer_key: KeyLike,
        context_id: str,
        key_version: int = 1,
    ) -> Envelope:
        """
        Apply the escrow layer.

        Args:
            session_key: 32-byte session key
            outer_key: 32-byte outer key from KeyMaterialProvider
            context_id: Message context the outer key was derived for
            key_version: Version of the escrow key shares

        Returns:
            Envelope with a single ESCROW layer
        """
        if not context_id:
            raise ValidationError("context_id is required", field="context_id")

        iv = secrets.token_bytes(NONCE_SIZE)
        descriptor_stub = LayerDescriptor(
            kind=LayerKind.ESCROW,
            iv=iv,
            auth_tag=b"",
            context_id=context_id,
            key_version=key_version,
        )
        sealed = AESGCM(key_bytes(outer_key)).encrypt(
            iv, bytes(key_bytes(session_key)), descriptor_stub.associated_data()
        )

        descriptor = LayerDescriptor(
            kind=LayerKind.ESCROW,
            iv=iv,
            auth_tag=sealed[-TAG_SIZE:],
            context_id=context_id,
            key_version=key_version,
        )
        return Envelope(layers=(descriptor,), payload=sealed[:-TAG_SIZE])

    def unwrap_from_escrow(self, envelope: Envelope, outer_key: KeyLike) -> SecretKey:
        """
        Remove the escrow layer and recover the session key.

        Raises:
            UnwrapError: On tamper, wrong key, or if a recipient layer is still present
        """
        if not isinstance(envelope, Envelope):
            raise UnwrapError("Expected an Envelope", layer=LayerKind.ESCROW.value)
        if envelope.top != LayerKind.ESCROW:
            raise UnwrapError(
                f"Cannot remove escrow layer while {envelope.top.value} layer is on top",
                layer=LayerKind.ESCROW.value,
            )

        descriptor = envelope.layers[-1]
        try:
            material = AESGCM(key_bytes(outer_key)).decrypt(
                descriptor.iv,
                envelope.payload + descriptor.auth_tag,
                descriptor.associated_data(),
            )
        except (InvalidTag, ValueError):
            logger.warning(f"Escrow unwrap failed for context {descriptor.context_id}")
            raise UnwrapError("Escrow layer did not verify", layer=LayerKind.ESCROW.value)

        if len(material) != KEY_BYTES:
            raise UnwrapError("Escrow layer held a malformed key", layer=LayerKind.ESCROW.value)
        return SecretKey(material)

    def wrap_for_recipient(
        self,
        escrow_envelope: Envelope,
        recipient_public_key: bytes,
    ) -> Envelope:
        """
        Apply the recipient layer around an escrow-wrapped session key.

        Args:
            escrow_envelope: Envelope whose top layer is ESCROW
            recipient_public_key: Raw 32-byte X25519 public key

        Returns:
            Envelope with ESCROW and RECIPIENT layers
        """
        if not isinstance(escrow_envelope, Envelope) or escrow_envelope.top != LayerKind.ESCROW:
            raise ValidationError(
                "The recipient layer may only wrap an escrow-wrapped session key",
                field="escrow_envelope",
            )
        if len(recipient_public_key) != RECIPIENT_KEY_BYTES:
            raise ValidationError("Recipient public key must be 32 bytes", field="recipient_public_key")

        try:
            recipient = X25519PublicKey.from_public_bytes(bytes(recipient_public_key))
        except ValueError as e:
            raise ValidationError(f"Invalid recipient public key: {e}", field="recipient_public_key")

        ephemeral = X25519PrivateKey.generate()
        ephemeral_public = _raw_public(ephemeral.public_key())
        shared = ephemeral.exchange(recipient)
        wrap_key = _recipient_key(shared, ephemeral_public, _raw_public(recipient))

        iv = secrets.token_bytes(NONCE_SIZE)
        stub = LayerDescriptor(
            kind=LayerKind.RECIPIENT,
            iv=iv,
            auth_tag=b"",
            ephemeral_public_key=ephemeral_public,
        )
        sealed = AESGCM(wrap_key).encrypt(iv, escrow_envelope.payload, stub.associated_data())

        descriptor = LayerDescriptor(
            kind=LayerKind.RECIPIENT,
            iv=iv,
            auth_tag=sealed[-TAG_SIZE:],
            ephemeral_public_key=ephemeral_public,
        )
        return Envelope(
            layers=escrow_envelope.layers + (descriptor,),
            payload=sealed[:-TAG_SIZE],
        )

    def unwrap_for_recipient(
        self,
        envelope: Union[Envelope, bytes],
        recipient_private_key: bytes,
    ) -> Envelope:
        """
        Remove the recipient layer.

        Returns:
            The inner escrow-wrapped Envelope (never a raw session key)

        Raises:
            UnwrapError: If the input is not recipient-wrapped or the key does not match
        """
        if not isinstance(envelope, Envelope) or envelope.top != LayerKind.RECIPIENT:
            raise UnwrapError(
                "Input is not a recipient-wrapped envelope", layer=LayerKind.RECIPIENT.value
            )

        descriptor = envelope.layers[-1]
        try:
            private_key = X25519PrivateKey.from_private_bytes(bytes(recipient_private_key))
            ephemeral = X25519PublicKey.from_public_bytes(descriptor.ephemeral_public_key or b"")
            shared = private_key.exchange(ephemeral)
            wrap_key = _recipient_key(
                shared,
                descriptor.ephemeral_public_key,
                _raw_public(private_key.public_key()),
            )
            inner = AESGCM(wrap_key).decrypt(
                descriptor.iv,
                envelope.payload + descriptor.auth_tag,
                descriptor.associated_data(),
            )
        except (InvalidTag, ValueError, TypeError):
            logger.warning("Recipient unwrap failed (key mismatch or tamper)")
            raise UnwrapError("Recipient layer did not verify", layer=LayerKind.RECIPIENT.value)

        return Envelope(layers=envelope.layers[:-1], payload=inner)
