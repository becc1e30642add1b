"""
Sealbox Sealed Message Pipeline

Main facade for sealing and opening messages:

Send:    metadata -> encrypt -> escrow wrap -> recipient wrap -> store -> index
         -> publish release condition
Receive: resolve -> fetch -> gate check -> release outer key -> remove
         recipient layer -> remove escrow layer -> verify commitment -> decrypt

Any failing step aborts the rest. Key material is wiped in finally blocks
so nothing survives an exception or cancellation.
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .cipher import SessionCipher
from .config import SealingConfig
from .content_store import ContentStore, FileContentStore, GatewayContentStore
from .envelope import EnvelopeWrapper
from .escrow import (
    EscrowAuthority,
    EscrowCondition,
    EscrowGate,
    HttpEscrowAuthority,
    LocalEscrowAuthority,
)
from .exceptions import (
    ConditionNotSatisfied,
    IntegrityError,
    RecordNotFoundError,
    ValidationError,
)
from .index import HashIndex, HashMappingRecord
from .keys import KeyMaterialProvider, SecretKey
from .models import (
    AttachmentBlob,
    EncryptedMessage,
    MessageAttachment,
    MessageMetadata,
    MessagePreview,
    SealedPackage,
    attachment_associated_data,
    attachment_type_for,
    determine_content_type,
    extract_preview_text,
    message_associated_data,
    session_key_commitment,
)
from .retry import NO_RETRY, RetryPolicy, retry_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttachmentInput:
    """An attachment handed to send()."""

    name: str
    data: bytes
    mime_type: str = "application/octet-stream"
    dimensions: Optional[Tuple[int, int]] = None
    thumbnail: Optional[str] = None


@dataclass
class SendReceipt:
    """Result of sealing a message."""

    message_id: str
    short_hash: str
    full_hash: str
    public_hash: str
    metadata_digest: str
    condition: EscrowCondition
    message: EncryptedMessage
    record: HashMappingRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "shortHash": self.short_hash,
            "fullHash": self.full_hash,
            "publicHash": self.public_hash,
            "metadataDigest": self.metadata_digest,
            "condition": self.condition.to_dict(),
        }


@dataclass
class OpenedAttachment:
    descriptor: MessageAttachment
    data: bytes


@dataclass
class OpenedMessage:
    """Result of opening a message."""

    short_hash: str
    plaintext: bytes
    metadata: MessageMetadata
    receipt_digest: str
    attachments: List[OpenedAttachment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.plaintext.decode("utf-8")


class SealedMessagePipeline:
    """
    Orchestrates sealing and opening of escrow-gated messages.

    Components are injected and shared; the pipeline holds no key material
    between calls.
    """

    def __init__(
        self,
        config: SealingConfig,
        key_provider: KeyMaterialProvider,
        content_store: ContentStore,
        index: HashIndex,
        gate: EscrowGate,
        cipher: Optional[SessionCipher] = None,
        wrapper: Optional[EnvelopeWrapper] = None,
    ):
        self._config = config
        self._keys = key_provider
        self._store = content_store
        self._index = index
        self._gate = gate
        self._cipher = cipher or SessionCipher()
        self._wrapper = wrapper or EnvelopeWrapper()

    @property
    def config(self) -> SealingConfig:
        return self._config

    @property
    def index(self) -> HashIndex:
        return self._index

    @property
    def gate(self) -> EscrowGate:
        return self._gate

    @property
    def content_store(self) -> ContentStore:
        return self._store

    # =========================================================================
    # Send
    # =========================================================================

    def send(
        self,
        text: str,
        recipient_public_key: bytes,
        condition: EscrowCondition,
        attachments: Optional[Sequence[AttachmentInput]] = None,
    ) -> SendReceipt:
        """
        Seal a message for one recipient behind a release condition.

        Args:
            text: Message text (may be empty when attachments are given)
            recipient_public_key: Raw X25519 public key of the recipient
            condition: Release terms; its reference is rebound to the message id
            attachments: Optional attachments, each encrypted separately

        Returns:
            SendReceipt with the short hash the recipient opens by

        Raises:
            ValidationError: Empty message or bad recipient key
            TransientError: A collaborator failed; nothing is indexed if the
                failure happened before the index write
        """
        attachments = list(attachments or [])
        if not isinstance(text, str):
            raise ValidationError("Message text must be a string", field="text")
        if not text and not attachments:
            raise ValidationError("Message must have text or attachments", field="text")

        message_id = secrets.token_hex(16)
        condition = condition.with_reference(message_id)

        with SecretKey.generate() as session_key:
            descriptors = self._seal_attachments(message_id, attachments, session_key)

            preview = extract_preview_text(text) if self._config.include_preview and text else None
            metadata = MessageMetadata(
                content_type=determine_content_type(bool(text), descriptors),
                attachments=tuple(descriptors),
                preview_text=preview or None,
            )
            digest = metadata.digest

            encrypted = self._cipher.encrypt(
                text.encode("utf-8"),
                session_key,
                message_associated_data(message_id, digest),
            )

            with self._keys.derive_outer_key(message_id) as outer_key:
                escrow_envelope = self._wrapper.wrap_for_escrow(
                    session_key, outer_key, message_id, self._keys.key_version
                )
            envelope = self._wrapper.wrap_for_recipient(escrow_envelope, recipient_public_key)

            package = SealedPackage(
                message_id=message_id,
                ciphertext=encrypted.ciphertext,
                iv=encrypted.iv,
                auth_tag=encrypted.auth_tag,
                envelope=envelope,
                condition=condition,
                commitment=session_key_commitment(session_key.material),
                metadata_digest=digest,
            )

        full_hash = self._store.put(package.to_bytes())
        public_hash = self._store.put(metadata.to_bytes())
        short_hash = full_hash[: self._config.short_hash_length]

        existing = self._index.get(short_hash)
        if existing is not None and existing.full_hash != full_hash:
            raise IntegrityError(
                f"Short hash collision: {short_hash}",
                details=f"existing={existing.full_hash} new={full_hash}",
            )

        first = descriptors[0] if descriptors else None
        record = self._index.upsert(
            HashMappingRecord(
                short_hash=short_hash,
                full_hash=full_hash,
                public_hash=public_hash,
                file_name=first.name if first else None,
                file_size=metadata.total_size if first else None,
                mime_type=first.mime_type if first else None,
                metadata_digest=digest,
            )
        )

        self._gate.authority.publish_condition(condition)
        logger.info(f"Message sealed: {short_hash} ({metadata.content_type.value})")

        return SendReceipt(
            message_id=message_id,
            short_hash=short_hash,
            full_hash=full_hash,
            public_hash=public_hash,
            metadata_digest=digest,
            condition=condition,
            message=EncryptedMessage(
                ciphertext=encrypted.ciphertext,
                metadata=metadata,
                iv=encrypted.iv,
                auth_tag=encrypted.auth_tag,
                content_address=full_hash,
            ),
            record=record,
        )

    def _seal_attachments(
        self,
        message_id: str,
        attachments: Sequence[AttachmentInput],
        session_key: SecretKey,
    ) -> List[MessageAttachment]:
        descriptors = []
        for position, attachment in enumerate(attachments):
            if not attachment.name:
                raise ValidationError("Attachment name is required", field="attachments")
            result = self._cipher.encrypt(
                attachment.data,
                session_key,
                attachment_associated_data(message_id, position),
            )
            blob = AttachmentBlob(
                ciphertext=result.ciphertext, iv=result.iv, auth_tag=result.auth_tag
            )
            descriptors.append(
                MessageAttachment(
                    type=attachment_type_for(attachment.mime_type),
                    name=attachment.name,
                    size=len(attachment.data),
                    mime_type=attachment.mime_type,
                    content_address=self._store.put(blob.to_bytes()),
                    dimensions=attachment.dimensions,
                    thumbnail=attachment.thumbnail,
                )
            )
        return descriptors

    def republish_condition(self, reference: str) -> EscrowCondition:
        """Publish the release condition of an indexed message again."""
        package = self._load_package(self.resolve(reference), NO_RETRY)
        self._gate.authority.publish_condition(package.condition)
        return package.condition

    # =========================================================================
    # Receive
    # =========================================================================

    def resolve(self, reference: str) -> HashMappingRecord:
        """
        Find the index record for a short hash or a metadata digest.

        Raises:
            RecordNotFoundError: If neither lookup matches
        """
        record = self._index.get(reference) or self._index.find_by_metadata_digest(reference)
        if record is None:
            raise RecordNotFoundError(reference)
        return record

    def receive(
        self,
        reference: str,
        recipient_private_key: bytes,
        retry: RetryPolicy = NO_RETRY,
    ) -> OpenedMessage:
        """
        Open a sealed message.

        Args:
            reference: Short hash or metadata digest
            recipient_private_key: Raw X25519 private key of the recipient
            retry: Policy for transient collaborator failures

        Returns:
            OpenedMessage with plaintext, metadata and attachments

        Raises:
            RecordNotFoundError: Unknown reference
            ConditionNotSatisfied: Escrow has not released the message;
                no unwrap step has been attempted
            DecryptionError: Wrong recipient key or tampered package
            IntegrityError: Release condition, recovered key or metadata does not
                match the package
        """
        record = self.resolve(reference)
        package = self._load_package(record, retry)
        condition_ref = package.condition.reference
        if not (
            condition_ref == package.message_id == package.envelope.escrow_layer.context_id
        ):
            logger.warning(f"Message {record.short_hash} carries a foreign release condition")
            raise IntegrityError("Release condition is not bound to this message")

        if not retry_call(lambda: self._gate.check_condition(condition_ref), retry):
            logger.info(f"Message {record.short_hash} still sealed")
            raise ConditionNotSatisfied(condition_ref)

        metadata = self._load_metadata(record, package, retry)

        released = retry_call(
            lambda: self._gate.release_outer_key(condition_ref), retry
        )
        receipt_digest = released.receipt_digest
        try:
            escrow_envelope = self._wrapper.unwrap_for_recipient(
                package.envelope, recipient_private_key
            )
            session_key = self._wrapper.unwrap_from_escrow(escrow_envelope, released)
        finally:
            released.wipe()

        with session_key:
            if session_key_commitment(session_key.material) != package.commitment:
                raise IntegrityError("Recovered session key does not match its commitment")

            plaintext = self._cipher.decrypt(
                package.ciphertext,
                package.iv,
                package.auth_tag,
                session_key,
                package.associated_data(),
            )
            opened = [
                OpenedAttachment(
                    descriptor=descriptor,
                    data=self._open_attachment(package, position, descriptor, session_key, retry),
                )
                for position, descriptor in enumerate(metadata.attachments)
            ]

        logger.info(f"Message opened: {record.short_hash}")
        return OpenedMessage(
            short_hash=record.short_hash,
            plaintext=plaintext,
            metadata=metadata,
            receipt_digest=receipt_digest,
            attachments=opened,
        )

    def _open_attachment(
        self,
        package: SealedPackage,
        position: int,
        descriptor: MessageAttachment,
        session_key: SecretKey,
        retry: RetryPolicy,
    ) -> bytes:
        blob = AttachmentBlob.from_bytes(
            retry_call(lambda: self._store.get(descriptor.content_address), retry)
        )
        return self._cipher.decrypt(
            blob.ciphertext,
            blob.iv,
            blob.auth_tag,
            session_key,
            attachment_associated_data(package.message_id, position),
        )

    def _load_package(self, record: HashMappingRecord, retry: RetryPolicy) -> SealedPackage:
        data = retry_call(lambda: self._store.get(record.full_hash), retry)
        return SealedPackage.from_bytes(data)

    def _load_metadata(
        self,
        record: HashMappingRecord,
        package: SealedPackage,
        retry: RetryPolicy,
    ) -> MessageMetadata:
        if not record.public_hash:
            raise IntegrityError(f"Record {record.short_hash} has no public metadata")
        metadata = MessageMetadata.from_bytes(
            retry_call(lambda: self._store.get(record.public_hash), retry)
        )
        if metadata.digest.lower() != package.metadata_digest.lower():
            raise IntegrityError("Public metadata does not match the sealed package")
        return metadata

    # =========================================================================
    # Preview
    # =========================================================================

    def preview(self, reference: str) -> MessagePreview:
        """Describe a message without decrypting it."""
        record = self.resolve(reference)
        package = self._load_package(record, NO_RETRY)
        metadata = self._load_metadata(record, package, NO_RETRY)
        is_unlocked = self._gate.check_condition(package.condition.reference)

        thumbnail = next(
            (item.thumbnail for item in metadata.attachments if item.thumbnail), None
        )
        return MessagePreview(
            short_hash=record.short_hash,
            content_type=metadata.content_type,
            has_attachment=metadata.has_attachment,
            file_count=len(metadata.attachments),
            total_size=metadata.total_size,
            created_at=metadata.timestamp,
            is_unlocked=is_unlocked,
            unlock_at=package.condition.unlock_at,
            preview_text=metadata.preview_text if is_unlocked else None,
            thumbnail=thumbnail,
        )

    def close(self) -> None:
        """Release index handles and HTTP clients."""
        self._index.close()
        for component in (self._store, self._gate.authority):
            close = getattr(component, "close", None)
            if close is not None:
                close()


def create_pipeline(
    config: Optional[SealingConfig] = None,
    authority: Optional[EscrowAuthority] = None,
    environ: Optional[Dict[str, str]] = None,
) -> SealedMessagePipeline:
    """
    Build a pipeline from configuration.

    Args:
        config: Sealing configuration (defaults to SealingConfig.from_env())
        authority: Escrow authority (defaults to HTTP if escrow_url is set,
            otherwise an in-process authority)
        environ: Environment mapping holding the key shares

    Returns:
        SealedMessagePipeline
    """
    config = config or SealingConfig.from_env()
    key_provider = KeyMaterialProvider.from_config(config, environ)

    if config.gateway_urls:
        store: ContentStore = GatewayContentStore(
            config.gateway_urls,
            upload_url=config.upload_url,
            timeout=config.request_timeout,
        )
    else:
        store = FileContentStore(config.resolved_content_dir)

    if authority is None:
        if config.escrow_url:
            authority = HttpEscrowAuthority(config.escrow_url, timeout=config.request_timeout)
        else:
            authority = LocalEscrowAuthority()

    return SealedMessagePipeline(
        config=config,
        key_provider=key_provider,
        content_store=store,
        index=HashIndex.from_config(config),
        gate=EscrowGate(authority, key_provider),
    )
