"""
Writer identities.

The record store attributes every record to the identity that signed the
upload (the server-side writer, not the end user). Signing itself happens
inside the upload service; the core only needs the address, and needs to
know whether credentials exist at all before it attempts a write.
"""

from typing import Optional

from .errors import Unauthorized
from .protocol import Identity


class StaticIdentity:
    """A fixed identity with optional credentials.

    With ``require_credential=True`` the identity is only active when a
    credential (API key) is present.
    """

    def __init__(
        self,
        address: str,
        credential: Optional[str] = None,
        *,
        require_credential: bool = False,
    ):
        self._address = address
        self._credential = credential
        self._require_credential = require_credential

    def get_active_identity(self) -> Identity:
        if not self._address:
            raise Unauthorized("No writer address configured")
        if self._require_credential and not self._credential:
            raise Unauthorized("Writer credentials not configured")
        return Identity(address=self._address)


class NoIdentity:
    """Identity provider for a disconnected session: every write is unauthorized."""

    def get_active_identity(self) -> Identity:
        raise Unauthorized("No active identity")
