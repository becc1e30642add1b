"""
FastAPI Dependency Injection Module

Resolves the shared pipeline components for route handlers. The pipeline
is attached to the application at creation time, so tests can build an
app around any pipeline they like.

Usage in routes:
    from sealbox.web.dependencies import get_index

    @router.get("/example")
    def example(index: HashIndex = Depends(get_index)):
        ...
"""

from fastapi import HTTPException, Request

from ..sealing.escrow import EscrowGate
from ..sealing.index import HashIndex
from ..sealing.pipeline import SealedMessagePipeline


def get_pipeline(request: Request) -> SealedMessagePipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


def get_index(request: Request) -> HashIndex:
    return get_pipeline(request).index


def get_gate(request: Request) -> EscrowGate:
    return get_pipeline(request).gate
