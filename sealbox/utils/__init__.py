"""
Sealbox Utilities

Common utility modules for the Sealbox system.
"""

from .paths import get_content_dir, get_data_dir, get_index_path

__all__ = [
    "get_data_dir",
    "get_index_path",
    "get_content_dir",
]
