"""
Sealbox Message Models

Message metadata, attachments and the binary framing of sealed packages.

Sealed package format:
    MAGIC | VERSION | HEADER_LEN | HEADER (JSON) | CIPHERTEXT

The header carries the content IV and tag, the layered key envelope, the
release condition, the session-key commitment and the metadata digest.
None of it is usable to derive the session key.
"""

import hashlib
import json
import re
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from .cipher import NONCE_SIZE, TAG_SIZE
from .envelope import Envelope
from .escrow import EscrowCondition
from .exceptions import ValidationError


# Constants
PACKAGE_MAGIC = b"SEALBOX"
ATTACHMENT_MAGIC = b"SEALATT"
PACKAGE_VERSION = 1
METADATA_VERSION = "1.0"
PREVIEW_MAX_LENGTH = 100


class ContentType(str, Enum):
    """What a sealed message carries."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    MIXED = "mixed"


class AttachmentType(str, Enum):
    """Coarse attachment category derived from the MIME type."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"


def attachment_type_for(mime_type: str) -> AttachmentType:
    mime = (mime_type or "").lower()
    for prefix in ("image", "video", "audio"):
        if mime.startswith(prefix + "/"):
            return AttachmentType(prefix)
    if mime.startswith("text/") or "pdf" in mime or "document" in mime or "word" in mime:
        return AttachmentType.DOCUMENT
    return AttachmentType.OTHER


def extract_preview_text(text: Optional[str], max_length: int = PREVIEW_MAX_LENGTH) -> str:
    """
    Collapse whitespace and truncate to at most max_length characters.

    Truncated text ends with "..." and the ellipsis counts toward the limit.
    """
    if not text:
        return ""
    cleaned = re.sub(r"\s+", " ", text.strip())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max(max_length - 3, 0)] + "..."


def determine_content_type(has_text: bool, attachments: Sequence["MessageAttachment"]) -> ContentType:
    if not attachments:
        return ContentType.TEXT
    if has_text:
        return ContentType.MIXED
    kinds = {attachment.type for attachment in attachments}
    if kinds == {AttachmentType.IMAGE}:
        return ContentType.IMAGE
    if len(kinds) == 1:
        return ContentType.FILE
    return ContentType.MIXED


def sha256_digest(data: bytes) -> str:
    """0x-prefixed SHA-256 hex digest."""
    return "0x" + hashlib.sha256(data).hexdigest()


def session_key_commitment(session_key: bytes) -> str:
    """Public commitment to a session key, checked after unwrapping."""
    return sha256_digest(bytes(session_key))


@dataclass(frozen=True)
class MessageAttachment:
    """Descriptor of one encrypted attachment."""

    type: AttachmentType
    name: str
    size: int
    mime_type: str
    content_address: str
    dimensions: Optional[Tuple[int, int]] = None  # (width, height)
    thumbnail: Optional[str] = None  # base64 data URL

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "name": self.name,
            "size": self.size,
            "mimeType": self.mime_type,
            "contentAddress": self.content_address,
        }
        if self.dimensions is not None:
            data["dimensions"] = {"width": self.dimensions[0], "height": self.dimensions[1]}
        if self.thumbnail is not None:
            data["thumbnail"] = self.thumbnail
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageAttachment":
        dimensions = data.get("dimensions")
        return cls(
            type=AttachmentType(data.get("type", "other")),
            name=data["name"],
            size=int(data["size"]),
            mime_type=data.get("mimeType", "application/octet-stream"),
            content_address=data["contentAddress"],
            dimensions=(int(dimensions["width"]), int(dimensions["height"])) if dimensions else None,
            thumbnail=data.get("thumbnail"),
        )


@dataclass(frozen=True)
class MessageMetadata:
    """Public description of a sealed message. Never encrypted by the pipeline."""

    content_type: ContentType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = METADATA_VERSION
    attachments: Tuple[MessageAttachment, ...] = ()
    preview_text: Optional[str] = None

    def __post_init__(self):
        if self.preview_text is not None and len(self.preview_text) > PREVIEW_MAX_LENGTH:
            raise ValidationError(
                f"Preview text exceeds {PREVIEW_MAX_LENGTH} characters", field="preview"
            )

    @property
    def has_attachment(self) -> bool:
        return len(self.attachments) > 0

    @property
    def total_size(self) -> int:
        return sum(attachment.size for attachment in self.attachments)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "contentType": self.content_type.value,
            "hasAttachment": self.has_attachment,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
        }
        if self.preview_text is not None:
            data["preview"] = {"text": self.preview_text}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageMetadata":
        try:
            attachments = tuple(
                MessageAttachment.from_dict(item) for item in data.get("attachments") or []
            )
            preview = data.get("preview") or {}
            metadata = cls(
                version=str(data.get("version", METADATA_VERSION)),
                timestamp=datetime.fromisoformat(data["timestamp"]),
                content_type=ContentType(data["contentType"]),
                attachments=attachments,
                preview_text=preview.get("text"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid message metadata: {e}", field="metadata")

        if "hasAttachment" in data and bool(data["hasAttachment"]) != metadata.has_attachment:
            raise ValidationError(
                "hasAttachment disagrees with the attachment list", field="hasAttachment"
            )
        return metadata

    def to_bytes(self) -> bytes:
        """Canonical JSON encoding; the metadata digest is computed over it."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "MessageMetadata":
        try:
            return cls.from_dict(json.loads(data))
        except ValueError as e:
            raise ValidationError(f"Invalid message metadata: {e}", field="metadata")

    @property
    def digest(self) -> str:
        return sha256_digest(self.to_bytes())


@dataclass(frozen=True)
class EncryptedMessage:
    """Ciphertext with the parameters and metadata carried alongside it."""

    ciphertext: bytes
    metadata: MessageMetadata
    iv: bytes
    auth_tag: bytes
    content_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext.hex(),
            "metadata": self.metadata.to_dict(),
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "contentAddress": self.content_address,
        }


def _frame(magic: bytes, header: Dict[str, Any], body: bytes) -> bytes:
    header_json = json.dumps(header, sort_keys=True).encode("utf-8")
    return (
        magic
        + struct.pack("<B", PACKAGE_VERSION)
        + struct.pack("<I", len(header_json))
        + header_json
        + body
    )


def _unframe(magic: bytes, data: bytes) -> Tuple[Dict[str, Any], bytes]:
    if not data.startswith(magic):
        raise ValidationError("Invalid package format: missing magic bytes", field="package")

    offset = len(magic)
    if len(data) < offset + 5:
        raise ValidationError("Invalid package format: truncated header", field="package")

    version = struct.unpack("<B", data[offset:offset + 1])[0]
    offset += 1
    if version != PACKAGE_VERSION:
        raise ValidationError(f"Unsupported package version: {version}", field="package")

    header_len = struct.unpack("<I", data[offset:offset + 4])[0]
    offset += 4
    if len(data) < offset + header_len:
        raise ValidationError("Invalid package format: truncated header", field="package")

    try:
        header = json.loads(data[offset:offset + header_len])
    except ValueError as e:
        raise ValidationError(f"Invalid package header: {e}", field="package")
    if not isinstance(header, dict):
        raise ValidationError("Invalid package header", field="package")

    return header, data[offset + header_len:]


def _hex_field(header: Dict[str, Any], name: str, size: int) -> bytes:
    try:
        value = bytes.fromhex(header[name])
    except (KeyError, ValueError, TypeError):
        raise ValidationError(f"Invalid package field: {name}", field=name)
    if len(value) != size:
        raise ValidationError(f"Invalid package field length: {name}", field=name)
    return value


def message_associated_data(message_id: str, metadata_digest: str) -> bytes:
    """Binds the content ciphertext to its message and public metadata."""
    return f"sealbox-message:{message_id}:{metadata_digest}".encode("utf-8")


def attachment_associated_data(message_id: str, index: int) -> bytes:
    return f"sealbox-attachment:{message_id}:{index}".encode("utf-8")


@dataclass(frozen=True)
class SealedPackage:
    """The blob stored in the content store for one sealed message."""

    message_id: str
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    envelope: Envelope
    condition: EscrowCondition
    commitment: str
    metadata_digest: str

    def associated_data(self) -> bytes:
        return message_associated_data(self.message_id, self.metadata_digest)

    def to_bytes(self) -> bytes:
        header = {
            "messageId": self.message_id,
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "envelope": self.envelope.to_dict(),
            "condition": self.condition.to_dict(),
            "sessionKeyCommitment": self.commitment,
            "metadataDigest": self.metadata_digest,
        }
        return _frame(PACKAGE_MAGIC, header, self.ciphertext)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SealedPackage":
        header, body = _unframe(PACKAGE_MAGIC, data)
        try:
            message_id = header["messageId"]
            commitment = header["sessionKeyCommitment"]
            digest = header["metadataDigest"]
        except KeyError as e:
            raise ValidationError(f"Missing package field: {e}", field="package")

        return cls(
            message_id=message_id,
            ciphertext=body,
            iv=_hex_field(header, "iv", NONCE_SIZE),
            auth_tag=_hex_field(header, "authTag", TAG_SIZE),
            envelope=Envelope.from_dict(header.get("envelope") or {}),
            condition=EscrowCondition.from_dict(header.get("condition") or {}),
            commitment=commitment,
            metadata_digest=digest,
        )


@dataclass(frozen=True)
class AttachmentBlob:
    """One encrypted attachment as stored in the content store."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes

    def to_bytes(self) -> bytes:
        header = {"iv": self.iv.hex(), "authTag": self.auth_tag.hex()}
        return _frame(ATTACHMENT_MAGIC, header, self.ciphertext)

    @classmethod
    def from_bytes(cls, data: bytes) -> "AttachmentBlob":
        header, body = _unframe(ATTACHMENT_MAGIC, data)
        return cls(
            ciphertext=body,
            iv=_hex_field(header, "iv", NONCE_SIZE),
            auth_tag=_hex_field(header, "authTag", TAG_SIZE),
        )


@dataclass(frozen=True)
class MessagePreview:
    """What can be shown about a message without decrypting it."""

    short_hash: str
    content_type: ContentType
    has_attachment: bool
    file_count: int
    total_size: int
    created_at: datetime
    is_unlocked: bool
    unlock_at: Optional[datetime] = None
    preview_text: Optional[str] = None
    thumbnail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shortHash": self.short_hash,
            "contentType": self.content_type.value,
            "hasAttachment": self.has_attachment,
            "fileCount": self.file_count,
            "totalSize": self.total_size,
            "createdAt": self.created_at.isoformat(),
            "unlockAt": self.unlock_at.isoformat() if self.unlock_at else None,
            "isUnlocked": self.is_unlocked,
            "previewText": self.preview_text,
            "thumbnail": self.thumbnail,
        }
