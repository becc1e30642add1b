"""
Tests for message metadata, previews and sealed package framing.
"""

import pytest

from sealbox.sealing.escrow import EscrowCondition
from sealbox.sealing.envelope import EnvelopeWrapper
from sealbox.sealing.exceptions import ValidationError
from sealbox.sealing.keys import SecretKey
from sealbox.sealing.models import (
    PACKAGE_MAGIC,
    AttachmentType,
    ContentType,
    MessageAttachment,
    MessageMetadata,
    SealedPackage,
    attachment_type_for,
    determine_content_type,
    extract_preview_text,
)


def _attachment(kind=AttachmentType.IMAGE, name="a.png", size=10):
    return MessageAttachment(
        type=kind,
        name=name,
        size=size,
        mime_type="image/png" if kind == AttachmentType.IMAGE else "application/pdf",
        content_address="ab" * 32,
    )


class TestPreviewText:
    """Tests for extract_preview_text."""

    def test_collapses_whitespace(self):
        assert extract_preview_text("  hello \n\n  there\tfriend  ") == "hello there friend"

    def test_short_text_unchanged(self):
        assert extract_preview_text("x" * 100) == "x" * 100

    def test_long_text_truncated_within_limit(self):
        preview = extract_preview_text("word " * 60)
        assert len(preview) == 100
        assert preview.endswith("...")

    def test_empty(self):
        assert extract_preview_text("") == ""
        assert extract_preview_text(None) == ""


class TestContentType:
    """Tests for content type derivation."""

    def test_text_only(self):
        assert determine_content_type(True, []) == ContentType.TEXT

    def test_text_with_attachment(self):
        assert determine_content_type(True, [_attachment()]) == ContentType.MIXED

    def test_images_only(self):
        assert determine_content_type(False, [_attachment(), _attachment(name="b.png")]) == ContentType.IMAGE

    def test_file_only(self):
        assert determine_content_type(False, [_attachment(AttachmentType.DOCUMENT)]) == ContentType.FILE

    def test_mixed_attachments(self):
        attachments = [_attachment(), _attachment(AttachmentType.DOCUMENT)]
        assert determine_content_type(False, attachments) == ContentType.MIXED

    @pytest.mark.parametrize(
        "mime, expected",
        [
            ("image/png", AttachmentType.IMAGE),
            ("video/mp4", AttachmentType.VIDEO),
            ("audio/ogg", AttachmentType.AUDIO),
            ("application/pdf", AttachmentType.DOCUMENT),
            ("application/zip", AttachmentType.OTHER),
        ],
    )
    def test_attachment_type_for(self, mime, expected):
        assert attachment_type_for(mime) == expected


class TestMessageMetadata:
    """Tests for MessageMetadata."""

    def test_has_attachment_follows_list(self):
        assert MessageMetadata(content_type=ContentType.TEXT).has_attachment is False
        metadata = MessageMetadata(content_type=ContentType.IMAGE, attachments=(_attachment(),))
        assert metadata.has_attachment is True
        assert metadata.to_dict()["hasAttachment"] is True

    def test_inconsistent_has_attachment_rejected(self):
        data = MessageMetadata(content_type=ContentType.TEXT).to_dict()
        data["hasAttachment"] = True
        with pytest.raises(ValidationError):
            MessageMetadata.from_dict(data)

    def test_bytes_round_trip_and_digest(self):
        metadata = MessageMetadata(
            content_type=ContentType.MIXED,
            attachments=(_attachment(),),
            preview_text="hello",
        )
        restored = MessageMetadata.from_bytes(metadata.to_bytes())
        assert restored == metadata
        assert restored.digest == metadata.digest
        assert metadata.digest.startswith("0x") and len(metadata.digest) == 66

    def test_preview_limit(self):
        with pytest.raises(ValidationError):
            MessageMetadata(content_type=ContentType.TEXT, preview_text="x" * 101)


class TestSealedPackage:
    """Tests for sealed package framing."""

    @pytest.fixture
    def package(self, recipient_keys, fake_clock):
        public_key, _ = recipient_keys
        wrapper = EnvelopeWrapper()
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(SecretKey.generate(), SecretKey.generate(), "msg-1"),
            public_key,
        )
        return SealedPackage(
            message_id="msg-1",
            ciphertext=b"\x00\x01ciphertext",
            iv=b"\x02" * 12,
            auth_tag=b"\x03" * 16,
            envelope=envelope,
            condition=EscrowCondition.time_lock("msg-1", fake_clock()),
            commitment="0x" + "aa" * 32,
            metadata_digest="0x" + "bb" * 32,
        )

    def test_bytes_round_trip(self, package):
        data = package.to_bytes()
        assert data.startswith(PACKAGE_MAGIC)
        assert SealedPackage.from_bytes(data) == package

    def test_header_holds_no_session_key(self, package):
        assert b"sessionKey\"" not in package.to_bytes()

    def test_bad_magic(self, package):
        with pytest.raises(ValidationError):
            SealedPackage.from_bytes(b"NOTSEAL" + package.to_bytes()[7:])

    def test_truncated(self, package):
        with pytest.raises(ValidationError):
            SealedPackage.from_bytes(package.to_bytes()[:20])

    def test_bad_iv_length(self, package):
        data = package.to_bytes().replace(b"02" * 12, b"02" * 11, 1)
        with pytest.raises(ValidationError):
            SealedPackage.from_bytes(data)
