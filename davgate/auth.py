"""
davgate.auth
~~~~~~~~~~~~
Basic-Auth user store.  Users come pre-built from :mod:`davgate.config`;
stored passwords are either plaintext or tagged with a scheme marker such
as ``{bcrypt}$2b$12$...``.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Set, Tuple

import bcrypt

from .acls import Rule

log = logging.getLogger("davgate.auth")

CHALLENGE = 'Basic realm="Restricted"'


class AuthError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class User:
    username: str
    password: str
    root: str
    modify: bool = True
    rules: Tuple[Rule, ...] = ()


def _check_bcrypt(hashed: str, supplied: str) -> bool:
    try:
        return bcrypt.checkpw(supplied.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError as exc:
        log.warning("bcrypt check rejected stored hash or input: %s", exc)
        return False


SCHEMES: Dict[str, Callable[[str, str], bool]] = {
    "bcrypt": _check_bcrypt,
}


def split_scheme(stored: str) -> Tuple[Optional[str], str]:
    """``"{bcrypt}xyz"`` -> ``("bcrypt", "xyz")``; unknown markers are plain."""
    if stored.startswith("{"):
        end = stored.find("}")
        if end > 1 and stored[1:end] in SCHEMES:
            return stored[1:end], stored[end + 1:]
    return None, stored


class SecretChecker:
    """Compares supplied secrets against stored ones.

    Hash comparisons are deterministic but slow, so pairs that verified once
    are remembered for the process lifetime.
    """

    def __init__(self) -> None:
        self._verified: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def __call__(self, stored: str, supplied: str) -> bool:
        key = (stored, supplied)
        if key in self._verified:
            return True

        scheme, material = split_scheme(stored)
        if scheme is None:
            ok = hmac.compare_digest(stored.encode("utf-8"), supplied.encode("utf-8"))
        else:
            ok = SCHEMES[scheme](material, supplied)

        if ok:
            with self._lock:
                self._verified.add(key)
        return ok

    def __len__(self) -> int:
        return len(self._verified)


def _decode_basic(header_val: str) -> tuple[str, str]:
    if not header_val.lower().startswith("basic "):
        raise AuthError("Unsupported auth scheme")
    try:
        decoded = base64.b64decode(header_val.split(None, 1)[1], validate=True).decode("utf-8")
    except (IndexError, binascii.Error, UnicodeDecodeError) as e:
        raise AuthError("Bad Base64") from e
    if ":" not in decoded:
        raise AuthError("Missing password separator")
    username, password = decoded.split(":", 1)
    return username, password


def credentials_from(auth_hdr: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(username, password)`` or None when absent or unreadable."""
    if not auth_hdr:
        return None
    try:
        return _decode_basic(auth_hdr)
    except AuthError as exc:
        log.debug("ignoring Authorization header: %s", exc)
        return None


class Authenticator:
    def __init__(self, users: Mapping[str, User], enabled: bool) -> None:
        self.users = users
        self.enabled = enabled
        self.check_secret = SecretChecker()

    def authenticate(
        self, credentials: Optional[Tuple[str, str]]
    ) -> Tuple[Optional[User], bool]:
        """Resolve *credentials* to ``(user, authorized)``.

        With auth disabled the credentials are advisory: a known username is
        bound without checking its password and nothing is ever rejected.
        With auth enabled a known user is returned even when the password is
        wrong, so callers can log who failed.
        """
        if credentials is None:
            return None, not self.enabled

        username, password = credentials
        user = self.users.get(username)
        if not self.enabled:
            return user, True
        if user is None:
            return None, False
        return user, self.check_secret(user.password, password)
