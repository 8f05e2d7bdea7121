"""
ClusterCall service tokens.

Short-lived, HMAC-signed capability tokens that let one service call another
inside the cluster.  Enabled when a shared secret is configured (usually via
``CLUSTER_TOKEN``); without one, signing returns None and verification is
not applicable.

Token layout::

    D<hex hmac-sha256>$<hex json claims>

Claims::

    e  -- Expiry, epoch milliseconds (required).
    n  -- Issuing service name (optional).
    t  -- Issuing service type (optional).

The signed string is ``action + str(e) + n + t``.  The action is not part of
the claims: the verifier binds the check to the action the token is
presented for, so a token cannot be replayed against another action.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from clustercall.config import ServiceIdentity

logger = logging.getLogger("ClusterCall.Token")

TOKEN_PREFIX = "D"
TOKEN_SEPARATOR = "$"
TOKEN_TTL_MS = 60000  # token expires in 1min


def _hash_input(action: str, expire_at: Any, name: Any = None, type_: Any = None) -> str:
    if isinstance(expire_at, float) and expire_at.is_integer():
        expire_at = int(expire_at)
    value = f"{action}{expire_at}"
    if name:
        value += str(name)
    if type_:
        value += str(type_)
    return value


def mismatch_count(given: str, expected: str) -> int:
    """Count differing positions over the full length of the longer string.

    Does not stop at the first difference.  Length differences still change
    the amount of work done, so this is not a constant-time comparison.
    """
    wrong = 0
    for i in range(max(len(given), len(expected))):
        a = given[i] if i < len(given) else None
        b = expected[i] if i < len(expected) else None
        if a != b:
            wrong += 1
    return wrong


class ClusterTokenCodec:
    """Issue and verify service tokens.

    Args:
        secret:    Shared HMAC secret.  None disables signing.
        identity:  Local service identity used when :meth:`sign` gets none.
        clock:     Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        secret: Optional[Union[str, bytes]] = None,
        identity: Optional[ServiceIdentity] = None,
        clock: Callable[[], float] = time.time,
    ):
        if isinstance(secret, str):
            secret = secret.encode()
        self.__secret = secret or None
        self.identity = identity or ServiceIdentity()
        self._clock = clock

    @property
    def enabled(self) -> bool:
        """True if a shared secret is configured."""
        return self.__secret is not None

    def has_token(self) -> bool:
        return self.enabled

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _digest(self, value: str) -> str:
        return hmac.new(self.__secret, value.encode(), hashlib.sha256).hexdigest()

    def sign(self, action: str, identity: Optional[ServiceIdentity] = None) -> Optional[str]:
        """Create a token for *action*, valid for 60 seconds.

        Returns:
            The encoded token, or None when no secret is configured.
        """
        if not self.enabled:
            return None
        identity = identity or self.identity
        expire_at = self._now_ms() + TOKEN_TTL_MS

        claims: Dict[str, Any] = {"e": expire_at}
        if identity.name:
            claims["n"] = identity.name
        if identity.type:
            claims["t"] = identity.type

        signature = self._digest(_hash_input(action, expire_at, identity.name, identity.type))
        public = json.dumps(claims, separators=(",", ":")).encode().hex()
        return f"{TOKEN_PREFIX}{signature}{TOKEN_SEPARATOR}{public}"

    def verify(self, token: Any, action: str) -> Union[Dict[str, Any], None, bool]:
        """Verify *token* for *action*.

        Returns:
            The decoded claims on success, ``False`` if the token is
            malformed, expired or tampered with, and ``None`` when signing is
            disabled (nothing to verify against).
        """
        if not self.enabled:
            return None
        if not isinstance(token, str) or not token.startswith(TOKEN_PREFIX):
            return False

        parts = token.split(TOKEN_SEPARATOR)
        if len(parts) < 2 or not parts[1]:
            return False
        try:
            raw = bytes.fromhex(parts[1])
            # Only the lowercase encoding produced by sign() is accepted.
            if raw.hex() != parts[1]:
                return False
            claims = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return False
        if not isinstance(claims, dict):
            return False

        expire_at = claims.get("e")
        if isinstance(expire_at, bool) or not isinstance(expire_at, (int, float)):
            return False
        if self._now_ms() >= expire_at:
            logger.debug("Rejected expired token for %s", action)
            return False

        signature = parts[0][len(TOKEN_PREFIX):]
        expected = self._digest(_hash_input(action, expire_at, claims.get("n"), claims.get("t")))
        if mismatch_count(signature, expected) != 0:
            return False
        return claims

    def decode_claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode the claim block without verification (for inspection only)."""
        try:
            claims = json.loads(bytes.fromhex(token.split(TOKEN_SEPARATOR)[1]).decode("utf-8"))
        except (IndexError, ValueError, UnicodeDecodeError):
            return None
        return claims if isinstance(claims, dict) else None
