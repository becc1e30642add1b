"""
Hash Mapping API Routes

Read and upsert short-hash index records.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from ...sealing.index import HashIndex, HashMappingRecord
from ..dependencies import get_index

logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# Models
# =============================================================================


class MappingUpsert(BaseModel):
    """Request to upsert a mapping; unset fields keep their stored values."""

    model_config = ConfigDict(populate_by_name=True)

    short_hash: str = Field(alias="shortHash")
    full_hash: Optional[str] = Field(default=None, alias="fullHash")
    public_hash: Optional[str] = Field(default=None, alias="publicHash")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize", ge=0)
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    metadata_digest: Optional[str] = Field(default=None, alias="metadataDigest")

    def to_record(self) -> HashMappingRecord:
        return HashMappingRecord(**self.model_dump())


class MappingList(BaseModel):
    mappings: List[Dict[str, Any]]
    count: int


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=MappingList)
def list_mappings(index: HashIndex = Depends(get_index)) -> MappingList:
    """List every mapping record."""
    records = [record.to_dict() for record in index.list_all()]
    return MappingList(mappings=records, count=len(records))


@router.get("/by-metadata/{digest}")
def get_mapping_by_metadata(digest: str, index: HashIndex = Depends(get_index)) -> Dict[str, Any]:
    """Look up a mapping by metadata digest."""
    record = index.find_by_metadata_digest(digest)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No mapping for metadata digest: {digest}")
    return record.to_dict()


@router.get("/{short_hash}")
def get_mapping(short_hash: str, index: HashIndex = Depends(get_index)) -> Dict[str, Any]:
    """Look up a mapping by short hash."""
    record = index.get(short_hash)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Mapping not found: {short_hash}")
    return record.to_dict()


@router.post("")
def upsert_mapping(request: MappingUpsert, index: HashIndex = Depends(get_index)) -> Dict[str, Any]:
    """Merge a mapping record into the index."""
    record = index.upsert(request.to_record())
    logger.info(f"Mapping upserted via API: {record.short_hash}")
    return record.to_dict()
