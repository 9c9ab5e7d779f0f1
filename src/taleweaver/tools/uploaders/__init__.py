"""Publishing integrations.

Flipbook: uploads a rendered PDF and polls until the hosted flipbook is ready.
"""

from .flipbook import FlipbookClient, parse_state

__all__ = [
    "FlipbookClient",
    "parse_state",
]
