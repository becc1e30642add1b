"""
API Routes

Route modules for the Sealbox web service.
"""

from . import conditions, mappings, messages

__all__ = ["conditions", "mappings", "messages"]
