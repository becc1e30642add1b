"""
Sealbox Sealing Module

Escrow-gated sealed messages.

Features:
- AES-256-GCM session encryption
- Layered key envelope (escrow layer, X25519 recipient layer)
- Time and payment release conditions behind a single escrow gate
- Content-addressed blob storage (filesystem, memory, HTTP gateways)
- Short-hash index with merge-on-write upserts
"""

from .cipher import CipherResult, SessionCipher
from .config import SealingConfig
from .content_store import (
    ContentStore,
    FileContentStore,
    GatewayContentStore,
    MemoryContentStore,
    content_address,
)
from .envelope import (
    Envelope,
    EnvelopeWrapper,
    LayerDescriptor,
    LayerKind,
    generate_recipient_keypair,
)
from .escrow import (
    ConditionKind,
    ConditionStatus,
    EscrowAuthority,
    EscrowCondition,
    EscrowGate,
    HttpEscrowAuthority,
    LocalEscrowAuthority,
    ReleasedKey,
    wait_for_release,
)
from .exceptions import (
    AuthenticationError,
    ConditionNotFoundError,
    ConditionNotSatisfied,
    ConfigurationError,
    ContentNotFoundError,
    DecryptionError,
    IntegrityError,
    NotFound,
    RecordNotFoundError,
    SealingError,
    StorageError,
    TransientError,
    UnwrapError,
    ValidationError,
)
from .index import (
    HashIndex,
    HashMappingRecord,
    IndexBackend,
    JsonFileBackend,
    MemoryBackend,
    SqliteBackend,
)
from .keys import KeyMaterialProvider, SecretKey
from .models import (
    ContentType,
    EncryptedMessage,
    MessageAttachment,
    MessageMetadata,
    MessagePreview,
    extract_preview_text,
)
from .pipeline import (
    AttachmentInput,
    OpenedMessage,
    SealedMessagePipeline,
    SendReceipt,
    create_pipeline,
)
from .retry import RetryPolicy, retry_call

__all__ = [
    # Config
    "SealingConfig",
    # Keys
    "KeyMaterialProvider",
    "SecretKey",
    # Cipher
    "SessionCipher",
    "CipherResult",
    # Envelope
    "Envelope",
    "EnvelopeWrapper",
    "LayerDescriptor",
    "LayerKind",
    "generate_recipient_keypair",
    # Escrow
    "ConditionKind",
    "ConditionStatus",
    "EscrowAuthority",
    "EscrowCondition",
    "EscrowGate",
    "HttpEscrowAuthority",
    "LocalEscrowAuthority",
    "ReleasedKey",
    "wait_for_release",
    # Content store
    "ContentStore",
    "FileContentStore",
    "GatewayContentStore",
    "MemoryContentStore",
    "content_address",
    # Index
    "HashIndex",
    "HashMappingRecord",
    "IndexBackend",
    "JsonFileBackend",
    "MemoryBackend",
    "SqliteBackend",
    # Models
    "ContentType",
    "EncryptedMessage",
    "MessageAttachment",
    "MessageMetadata",
    "MessagePreview",
    "extract_preview_text",
    # Pipeline
    "AttachmentInput",
    "OpenedMessage",
    "SealedMessagePipeline",
    "SendReceipt",
    "create_pipeline",
    # Retry
    "RetryPolicy",
    "retry_call",
    # Exceptions
    "SealingError",
    "ConfigurationError",
    "ValidationError",
    "DecryptionError",
    "AuthenticationError",
    "UnwrapError",
    "ConditionNotSatisfied",
    "NotFound",
    "ContentNotFoundError",
    "RecordNotFoundError",
    "ConditionNotFoundError",
    "TransientError",
    "IntegrityError",
    "StorageError",
]
