"""
Configurable paths for Sealbox.

Every on-disk location (index, content store) is routed through
get_data_dir(), which respects:

  1. SEALBOX_DATA_DIR  (explicit override)
  2. XDG_DATA_HOME     (XDG fallback)
  3. ~/.local/share/sealbox (default)
"""

import os
from pathlib import Path


def get_data_dir() -> Path:
    """Return the Sealbox data directory, configurable via env var."""
    data_dir = os.environ.get("SEALBOX_DATA_DIR")
    if data_dir:
        return Path(data_dir)
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(xdg_data) / "sealbox"


def get_index_path(backend: str = "json") -> Path:
    """Return the default path of the hash index for a backend."""
    suffix = "db" if backend == "sqlite" else "json"
    return get_data_dir() / f"metadata-mapping.{suffix}"


def get_content_dir() -> Path:
    """Return the directory of the filesystem content store."""
    return get_data_dir() / "content"
