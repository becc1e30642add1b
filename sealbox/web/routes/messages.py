"""
Message API Routes

Describe sealed messages without decrypting them, and open them once the
escrow gate releases them.
"""

import base64
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ...sealing.exceptions import ValidationError
from ...sealing.pipeline import SealedMessagePipeline
from ..dependencies import get_pipeline

logger = logging.getLogger(__name__)
router = APIRouter()


class OpenRequest(BaseModel):
    """Recipient key used to remove the recipient layer."""

    model_config = ConfigDict(populate_by_name=True)

    private_key: str = Field(alias="privateKey", description="Raw X25519 private key, hex")

    def key_bytes(self) -> bytes:
        value = self.private_key.strip()
        if value.startswith("0x"):
            value = value[2:]
        try:
            return bytes.fromhex(value)
        except ValueError:
            raise ValidationError("privateKey must be hex", field="privateKey")


@router.get("/{short_hash}/preview")
def get_message_preview(
    short_hash: str,
    pipeline: SealedMessagePipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """
    Preview a sealed message.

    Returns content type, attachment count and size, unlock time and the
    current lock status. Preview text is only included once unlocked.
    """
    return pipeline.preview(short_hash).to_dict()


@router.post("/{short_hash}/open")
def open_message(
    short_hash: str,
    request: OpenRequest,
    pipeline: SealedMessagePipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """
    Open a sealed message through the escrow gate.

    Answers 423 while the release condition is unmet and 403 for a wrong
    key or tampered package.
    """
    opened = pipeline.receive(short_hash, request.key_bytes())
    logger.info(f"Message opened via API: {opened.short_hash}")
    return {
        "shortHash": opened.short_hash,
        "text": opened.text,
        "metadata": opened.metadata.to_dict(),
        "receiptDigest": opened.receipt_digest,
        "attachments": [
            {
                "name": item.descriptor.name,
                "mimeType": item.descriptor.mime_type,
                "size": len(item.data),
                "base64": base64.b64encode(item.data).decode(),
            }
            for item in opened.attachments
        ],
    }
