"""
Sealbox - Escrow-Gated Sealed Messages

This package provides the core implementation of Sealbox, including:
- Layered encryption of message payloads (session, escrow and recipient layers)
- Escrow-gated release of the outer unwrap key (time or payment conditions)
- Content-addressed storage of ciphertext blobs
- A persistent short-hash index over sealed messages
"""

__version__ = "0.1.0"
__author__ = "Sealbox Contributors"
