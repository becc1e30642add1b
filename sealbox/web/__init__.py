"""
Sealbox Web Service

FastAPI service exposing the hash index, message previews and escrow
condition status.
"""

from .app import create_app

__all__ = ["create_app"]
