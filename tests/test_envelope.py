"""
Tests for the layered key envelope.
"""

import pytest

from sealbox.sealing.envelope import (
    Envelope,
    EnvelopeWrapper,
    LayerDescriptor,
    LayerKind,
    generate_recipient_keypair,
)
from sealbox.sealing.exceptions import UnwrapError, ValidationError
from sealbox.sealing.keys import SecretKey


@pytest.fixture
def wrapper():
    return EnvelopeWrapper()


@pytest.fixture
def session_key():
    return SecretKey.generate()


@pytest.fixture
def outer_key():
    return SecretKey.generate()


def _flip(data: bytes, position: int = 0) -> bytes:
    mutable = bytearray(data)
    mutable[position] ^= 0x80
    return bytes(mutable)


class TestEscrowLayer:
    """Tests for wrap_for_escrow / unwrap_from_escrow."""

    def test_round_trip(self, wrapper, session_key, outer_key):
        envelope = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1", key_version=3)
        assert envelope.top == LayerKind.ESCROW
        assert envelope.escrow_layer.context_id == "msg-1"
        assert envelope.escrow_layer.key_version == 3

        recovered = wrapper.unwrap_from_escrow(envelope, outer_key)
        assert bytes(recovered.material) == bytes(session_key.material)

    def test_payload_is_not_the_key(self, wrapper, session_key, outer_key):
        envelope = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        assert envelope.payload != bytes(session_key.material)

    def test_wrong_outer_key(self, wrapper, session_key, outer_key):
        envelope = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        with pytest.raises(UnwrapError) as exc_info:
            wrapper.unwrap_from_escrow(envelope, SecretKey.generate())
        assert exc_info.value.layer == "escrow"

    def test_tampered_payload(self, wrapper, session_key, outer_key):
        envelope = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        tampered = Envelope(layers=envelope.layers, payload=_flip(envelope.payload))
        with pytest.raises(UnwrapError):
            wrapper.unwrap_from_escrow(tampered, outer_key)

    def test_tampered_context_descriptor(self, wrapper, session_key, outer_key):
        envelope = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        layer = envelope.escrow_layer
        moved = LayerDescriptor(
            kind=layer.kind,
            iv=layer.iv,
            auth_tag=layer.auth_tag,
            context_id="msg-2",
            key_version=layer.key_version,
        )
        with pytest.raises(UnwrapError):
            wrapper.unwrap_from_escrow(Envelope(layers=(moved,), payload=envelope.payload), outer_key)

    def test_context_required(self, wrapper, session_key, outer_key):
        with pytest.raises(ValidationError):
            wrapper.wrap_for_escrow(session_key, outer_key, "")


class TestRecipientLayer:
    """Tests for wrap_for_recipient / unwrap_for_recipient."""

    def test_full_round_trip(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, private_key = recipient_keys
        escrowed = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        envelope = wrapper.wrap_for_recipient(escrowed, public_key)

        assert [layer.kind for layer in envelope.layers] == [LayerKind.ESCROW, LayerKind.RECIPIENT]

        inner = wrapper.unwrap_for_recipient(envelope, private_key)
        assert inner.top == LayerKind.ESCROW
        assert inner.payload == escrowed.payload

        recovered = wrapper.unwrap_from_escrow(inner, outer_key)
        assert bytes(recovered.material) == bytes(session_key.material)

    def test_wrong_private_key(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, _ = recipient_keys
        _, other_private = generate_recipient_keypair()
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1"), public_key
        )
        with pytest.raises(UnwrapError) as exc_info:
            wrapper.unwrap_for_recipient(envelope, other_private)
        assert exc_info.value.layer == "recipient"

    def test_tampered_recipient_payload(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, private_key = recipient_keys
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1"), public_key
        )
        tampered = Envelope(layers=envelope.layers, payload=_flip(envelope.payload, 5))
        with pytest.raises(UnwrapError):
            wrapper.unwrap_for_recipient(tampered, private_key)

    def test_recipient_key_alone_is_insufficient(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, private_key = recipient_keys
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1"), public_key
        )
        inner = wrapper.unwrap_for_recipient(envelope, private_key)
        assert isinstance(inner, Envelope)
        assert bytes(session_key.material) not in inner.payload

    def test_invalid_recipient_public_key(self, wrapper, session_key, outer_key):
        escrowed = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        with pytest.raises(ValidationError):
            wrapper.wrap_for_recipient(escrowed, b"\x01" * 16)


class TestLayerOrdering:
    """The recipient layer only ever wraps an escrow-wrapped key."""

    def test_recipient_wrap_rejects_raw_session_key(self, wrapper, session_key, recipient_keys):
        public_key, _ = recipient_keys
        with pytest.raises(ValidationError):
            wrapper.wrap_for_recipient(bytes(session_key.material), public_key)

    def test_recipient_wrap_rejects_double_wrap(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, _ = recipient_keys
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1"), public_key
        )
        with pytest.raises(ValidationError):
            wrapper.wrap_for_recipient(envelope, public_key)

    def test_recipient_unwrap_rejects_raw_session_key(self, wrapper, session_key, recipient_keys):
        _, private_key = recipient_keys
        with pytest.raises(UnwrapError):
            wrapper.unwrap_for_recipient(bytes(session_key.material), private_key)

    def test_recipient_unwrap_rejects_escrow_only_envelope(self, wrapper, session_key, outer_key, recipient_keys):
        _, private_key = recipient_keys
        escrowed = wrapper.wrap_for_escrow(session_key, outer_key, "msg-1")
        with pytest.raises(UnwrapError):
            wrapper.unwrap_for_recipient(escrowed, private_key)

    def test_escrow_unwrap_requires_recipient_layer_removed(
        self, wrapper, session_key, outer_key, recipient_keys
    ):
        public_key, _ = recipient_keys
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1"), public_key
        )
        with pytest.raises(UnwrapError):
            wrapper.unwrap_from_escrow(envelope, outer_key)

    def test_out_of_order_layers_rejected(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, _ = recipient_keys
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1"), public_key
        )
        with pytest.raises(ValidationError):
            Envelope(layers=tuple(reversed(envelope.layers)), payload=envelope.payload)
        with pytest.raises(ValidationError):
            Envelope(layers=(), payload=envelope.payload)


class TestEnvelopeSerialization:
    """Tests for Envelope.to_dict / from_dict."""

    def test_dict_form_unwraps(self, wrapper, session_key, outer_key, recipient_keys):
        public_key, private_key = recipient_keys
        envelope = wrapper.wrap_for_recipient(
            wrapper.wrap_for_escrow(session_key, outer_key, "msg-1", key_version=2), public_key
        )
        data = envelope.to_dict()
        assert [layer["kind"] for layer in data["layers"]] == ["escrow", "recipient"]
        assert data["layers"][0]["keyVersion"] == 2

        restored = Envelope.from_dict(data)
        recovered = wrapper.unwrap_from_escrow(
            wrapper.unwrap_for_recipient(restored, private_key), outer_key
        )
        assert bytes(recovered.material) == bytes(session_key.material)

    def test_invalid_dict(self):
        with pytest.raises(ValidationError):
            Envelope.from_dict({"layers": [{"kind": "bogus", "iv": "00", "authTag": "00"}], "payload": ""})
