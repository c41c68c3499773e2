"""
Utility functions for the session lifecycle.

- **Session ids**: collision-free identifiers handed to clients in the `mcp-session-id` header.
"""

import logging
import uuid

_LOGGER = logging.getLogger(__name__)


def generate_session_id() -> str:
    """
    Generate a new session identifier.

    Uses a random UUID4 rendered as 32 lowercase hex digits, which is a valid value for the
    `mcp-session-id` header (visible ASCII only) and carries 122 bits of randomness.

    Returns:
        str: The session id.
    """
    session_id = uuid.uuid4().hex
    _LOGGER.debug(f"[_utils:generate_session_id] generated session id {session_id}")
    return session_id
