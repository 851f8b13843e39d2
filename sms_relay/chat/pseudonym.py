"""Pseudonymous user ids for the completion provider.

The provider only needs a string that uniquely identifies a user for abuse
tracking, so the sender's phone number is hashed rather than passed as is.
"""

import hashlib


def pseudonymize(raw_address: str) -> str:
    """Derive a stable, one-way identifier from a sender address.

    Args:
        raw_address: Sender address as received (e.g., "+15551234567")

    Returns:
        SHA-256 of the UTF-8 encoded address as 64 uppercase hex characters
    """
    return hashlib.sha256(raw_address.encode("utf-8")).hexdigest().upper()
