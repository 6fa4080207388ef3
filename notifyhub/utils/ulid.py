"""ULID identifiers for notifyhub.

Key records, security events and generated request ids all use ULIDs: 26
characters of Crockford Base32, lexicographically sortable by creation time,
URL-safe. Generation is delegated to the ``python-ulid`` library.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new ULID as a 26-character uppercase string.

    Example::

        key_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
    """
    return str(ULID())


def generate_request_id() -> str:
    """Return a correlation id for a request that arrived without one."""
    return f"req_{generate_ulid()}"
