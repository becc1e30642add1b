"""
Pytest Configuration and Shared Fixtures

This module provides centralized fixtures for testing Sealbox components.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Generator, Tuple

import pytest

from sealbox.sealing.config import SealingConfig
from sealbox.sealing.content_store import MemoryContentStore
from sealbox.sealing.envelope import generate_recipient_keypair
from sealbox.sealing.escrow import EscrowGate, LocalEscrowAuthority
from sealbox.sealing.index import HashIndex, MemoryBackend
from sealbox.sealing.keys import KeyMaterialProvider
from sealbox.sealing.pipeline import SealedMessagePipeline


SHARE_A = "11" * 32
SHARE_B = "22" * 32


# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def clean_environment():
    """Ensure clean environment for each test."""
    # Store original environment
    original_env = os.environ.copy()

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


# =============================================================================
# Temporary Directory Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def escrow_env() -> Dict[str, str]:
    """Escrow key shares as they would appear in the environment."""
    env = {
        "SEALBOX_ESCROW_KEY_PART_A": SHARE_A,
        "SEALBOX_ESCROW_KEY_PART_B": SHARE_B,
        "SEALBOX_ESCROW_KEY_VERSION": "1",
    }
    os.environ.update(env)
    return env


@pytest.fixture
def test_config(temp_dir: Path) -> SealingConfig:
    """Provide a SealingConfig rooted in a temporary directory."""
    return SealingConfig(data_dir=temp_dir, index_backend="memory")


@pytest.fixture
def key_provider(test_config: SealingConfig, escrow_env) -> KeyMaterialProvider:
    return KeyMaterialProvider.from_config(test_config, escrow_env)


@pytest.fixture
def recipient_keys() -> Tuple[bytes, bytes]:
    """Recipient X25519 key pair as (public, private)."""
    return generate_recipient_keypair()


# =============================================================================
# Escrow Fixtures
# =============================================================================


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def authority(fake_clock: FakeClock) -> LocalEscrowAuthority:
    return LocalEscrowAuthority(clock=fake_clock, secret=b"authority-secret")


@pytest.fixture
def gate(authority, key_provider, fake_clock) -> EscrowGate:
    return EscrowGate(authority, key_provider, clock=fake_clock)


# =============================================================================
# Pipeline Fixtures
# =============================================================================


@pytest.fixture
def content_store() -> MemoryContentStore:
    return MemoryContentStore()


@pytest.fixture
def hash_index() -> HashIndex:
    return HashIndex(MemoryBackend())


@pytest.fixture
def pipeline(test_config, key_provider, content_store, hash_index, gate) -> SealedMessagePipeline:
    """Pipeline over in-memory collaborators and a fake clock."""
    return SealedMessagePipeline(
        config=test_config,
        key_provider=key_provider,
        content_store=content_store,
        index=hash_index,
        gate=gate,
    )
