"""
Credential Relay - holds the caller's bearer credential for exactly one request
"""

from typing import Dict, Iterator, Optional
from contextlib import contextmanager
import threading
import structlog

from taskpilot.domain.models.errors import ConfigurationError, CredentialMissing

logger = structlog.get_logger(__name__)


def extract_bearer(authorization: Optional[str]) -> str:
    """
    Extract the token from an Authorization header

    Args:
        authorization: Raw header value, expected as "Bearer <token>"

    Returns:
        The token, unchanged

    Raises:
        CredentialMissing: If the header is absent or not a bearer credential
    """

    if not authorization:
        raise CredentialMissing("No Authorization header provided")

    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise CredentialMissing("Authorization header is not a bearer credential")

    return token


class CredentialScope:
    """Handle passed down the call chain of one request"""

    def __init__(self, relay: "CredentialRelay", request_id: str):
        self._relay = relay
        self.request_id = request_id

    def current(self) -> str:
        """Credential held for this request"""
        return self._relay.current(self.request_id)

    @property
    def active(self) -> bool:
        return self._relay.is_held(self.request_id)

    def release(self):
        self._relay.release(self.request_id)

    def __repr__(self) -> str:
        # never render the credential itself
        return f"CredentialScope(request_id={self.request_id!r}, active={self.active})"


class CredentialRelay:
    """Request-scoped credential holder with guaranteed release"""

    def __init__(self):
        self._held: Dict[str, str] = {}
        self._lock = threading.Lock()

    def hold(self, request_id: str, credential: str) -> CredentialScope:
        """Store a credential for one in-flight request"""

        if not credential:
            raise CredentialMissing("Empty credential")

        with self._lock:
            if request_id in self._held:
                raise ConfigurationError(f"Credential already held for request {request_id}")
            self._held[request_id] = credential

        logger.debug("Credential held", scope_id=request_id)
        return CredentialScope(self, request_id)

    def current(self, request_id: str) -> str:
        """Credential for a request, only valid inside its held scope"""

        with self._lock:
            credential = self._held.get(request_id)

        if credential is None:
            raise ConfigurationError(
                f"No credential held for request {request_id}; current() called outside a held scope"
            )
        return credential

    def is_held(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._held

    def release(self, request_id: str) -> bool:
        """Discard the credential of a request, safe to call more than once"""

        with self._lock:
            released = self._held.pop(request_id, None) is not None

        if released:
            logger.debug("Credential released", scope_id=request_id)
        return released

    @contextmanager
    def scope(self, request_id: str, credential: str) -> Iterator[CredentialScope]:
        """Hold a credential for the body of the block, release on every exit path"""

        handle = self.hold(request_id, credential)
        try:
            yield handle
        finally:
            self.release(request_id)

    def held_count(self) -> int:
        with self._lock:
            return len(self._held)
