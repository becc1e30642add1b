"""
Tests for the Sealbox web service.

Tests the FastAPI mapping, message and condition endpoints.
"""

import base64
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from sealbox.sealing.envelope import generate_recipient_keypair
from sealbox.sealing.escrow import EscrowCondition
from sealbox.sealing.exceptions import (
    AuthenticationError,
    ConditionNotSatisfied,
    ContentNotFoundError,
    TransientError,
    ValidationError,
)
from sealbox.sealing.pipeline import AttachmentInput
from sealbox.web.app import create_app, status_for_error

FULL = "ab12" + "ff" * 30
DIGEST = "0x" + "cd" * 32


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline)) as test_client:
        yield test_client


# =============================================================================
# Mapping Tests
# =============================================================================


class TestMappingsAPI:
    """Tests for /api/mappings."""

    def test_upsert_and_get(self, client):
        response = client.post(
            "/api/mappings",
            json={"shortHash": "ab12", "fullHash": FULL, "fileName": "a.png"},
        )
        assert response.status_code == 200
        assert response.json()["fullHash"] == FULL

        response = client.post("/api/mappings", json={"shortHash": "ab12", "fileSize": 2048})
        assert response.status_code == 200

        data = client.get("/api/mappings/ab12").json()
        assert data["shortHash"] == "ab12"
        assert data["fullHash"] == FULL
        assert data["fileName"] == "a.png"
        assert data["fileSize"] == 2048
        assert "updatedAt" in data

    def test_list(self, client):
        client.post("/api/mappings", json={"shortHash": "aa", "fullHash": FULL})
        client.post("/api/mappings", json={"shortHash": "bb", "fullHash": FULL})

        data = client.get("/api/mappings").json()
        assert data["count"] == 2
        assert {m["shortHash"] for m in data["mappings"]} == {"aa", "bb"}

    def test_get_missing(self, client):
        assert client.get("/api/mappings/nope").status_code == 404

    def test_by_metadata(self, client):
        client.post("/api/mappings", json={"shortHash": "ab12", "fullHash": FULL, "metadataDigest": DIGEST})

        response = client.get(f"/api/mappings/by-metadata/{DIGEST.upper().replace('0X', '0x')}")
        assert response.status_code == 200
        assert response.json()["shortHash"] == "ab12"

    def test_by_metadata_empty_digest(self, client):
        client.post("/api/mappings", json={"shortHash": "ab12", "fullHash": FULL, "metadataDigest": "0x"})
        assert client.get("/api/mappings/by-metadata/0x").status_code == 404

    def test_upsert_without_full_hash_is_400(self, client):
        response = client.post("/api/mappings", json={"shortHash": "new", "fileSize": 1})
        assert response.status_code == 400

    def test_upsert_blank_short_hash_is_400(self, client):
        response = client.post("/api/mappings", json={"shortHash": "  ", "fullHash": FULL})
        assert response.status_code == 400

    def test_upsert_schema_error_is_422(self, client):
        response = client.post("/api/mappings", json={"fullHash": FULL})
        assert response.status_code == 422


# =============================================================================
# Message and Condition Tests
# =============================================================================


class TestMessagesAPI:
    """Tests for /api/messages and /api/conditions."""

    def test_preview(self, client, pipeline, recipient_keys, fake_clock):
        public_key, _ = recipient_keys
        receipt = pipeline.send(
            "hello", public_key, EscrowCondition.time_lock("draft", fake_clock() + timedelta(hours=1))
        )

        data = client.get(f"/api/messages/{receipt.short_hash}/preview").json()
        assert data["shortHash"] == receipt.short_hash
        assert data["contentType"] == "text"
        assert data["isUnlocked"] is False
        assert data["hasAttachment"] is False

        fake_clock.advance(hours=1)
        assert client.get(f"/api/messages/{receipt.short_hash}/preview").json()["isUnlocked"] is True

    def test_preview_missing(self, client):
        response = client.get("/api/messages/unknown/preview")
        assert response.status_code == 404

    def test_condition_status(self, client, pipeline, recipient_keys, authority):
        public_key, _ = recipient_keys
        receipt = pipeline.send("paid", public_key, EscrowCondition.payment("draft", "inv-1"))

        data = client.get(f"/api/conditions/{receipt.message_id}").json()
        assert data["kind"] == "payment"
        assert data["satisfied"] is False

        authority.confirm_payment("inv-1")
        assert client.get(f"/api/conditions/{receipt.message_id}").json()["satisfied"] is True

    def test_condition_missing(self, client):
        assert client.get("/api/conditions/unknown").status_code == 404


class TestOpenAPI:
    """Tests for POST /api/messages/{short_hash}/open."""

    def test_open_after_release(self, client, pipeline, recipient_keys, fake_clock):
        public_key, private_key = recipient_keys
        receipt = pipeline.send(
            "meet at noon",
            public_key,
            EscrowCondition.time_lock("draft", fake_clock() + timedelta(hours=1)),
            [AttachmentInput(name="notes.txt", data=b"attached", mime_type="text/plain")],
        )

        response = client.post(
            f"/api/messages/{receipt.short_hash}/open", json={"privateKey": private_key.hex()}
        )
        assert response.status_code == 423

        fake_clock.advance(hours=1)
        data = client.post(
            f"/api/messages/{receipt.short_hash}/open", json={"privateKey": private_key.hex()}
        ).json()
        assert data["text"] == "meet at noon"
        assert data["metadata"]["contentType"] == "mixed"
        assert base64.b64decode(data["attachments"][0]["base64"]) == b"attached"
        assert data["receiptDigest"]

    def test_wrong_key_is_generic_403(self, client, pipeline, recipient_keys, fake_clock):
        public_key, _ = recipient_keys
        _, other_private = generate_recipient_keypair()
        receipt = pipeline.send(
            "not yours", public_key, EscrowCondition.time_lock("draft", fake_clock())
        )

        response = client.post(
            f"/api/messages/{receipt.short_hash}/open", json={"privateKey": other_private.hex()}
        )
        assert response.status_code == 403
        assert response.json() == {"detail": "Message could not be opened"}

    def test_bad_key_encoding_is_400(self, client, pipeline, recipient_keys, fake_clock):
        public_key, _ = recipient_keys
        receipt = pipeline.send("x", public_key, EscrowCondition.time_lock("draft", fake_clock()))
        response = client.post(f"/api/messages/{receipt.short_hash}/open", json={"privateKey": "zz"})
        assert response.status_code == 400

    def test_open_missing(self, client, recipient_keys):
        _, private_key = recipient_keys
        response = client.post("/api/messages/unknown/open", json={"privateKey": private_key.hex()})
        assert response.status_code == 404


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["components"]["records"] == 0


class TestErrorMapping:
    """Tests for error to status mapping."""

    @pytest.mark.parametrize(
        "error, status",
        [
            (ValidationError("bad"), 400),
            (AuthenticationError(), 403),
            (ContentNotFoundError("0" * 64), 404),
            (ConditionNotSatisfied("ref"), 423),
            (TransientError("down"), 503),
        ],
    )
    def test_status_for_error(self, error, status):
        assert status_for_error(error) == status
