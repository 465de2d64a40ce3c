"""
davgate.core
~~~~~~~~~~~~
The gate in front of the WebDAV engines: CORS, authentication, path and
modify authorization, then hand-off to the requesting user's engine.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .acls import ACLChecker
from .auth import CHALLENGE, Authenticator, User, credentials_from
from .config import AccessConfig
from .cors import Header, cors_headers
from .handlers import HandlerCache
from .logger import GateLogger

_REASONS = {200: "OK", 401: "Unauthorized", 403: "Forbidden"}


def request_path(environ) -> str:
    """PATH_INFO as text (WSGI hands it over latin-1 encoded)."""
    raw = environ.get("PATH_INFO", "") or "/"
    try:
        return raw.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return raw


def client_addr(environ) -> str:
    return environ.get("HTTP_X_FORWARDED_FOR", "") or environ.get("REMOTE_ADDR", "-")


class DavGate:
    def __init__(self, access: AccessConfig, handlers: HandlerCache, logger: GateLogger) -> None:
        self.access = access
        self.handlers = handlers
        self.logger = logger
        self.authenticator = Authenticator(access.users, access.auth_enabled)
        self.acl = ACLChecker()

    def __call__(self, environ, start_response):
        method = environ["REQUEST_METHOD"]
        path = request_path(environ)
        extra: List[Header] = []

        origin = environ.get("HTTP_ORIGIN", "")
        if self.access.cors.applies(origin):
            # before auth so even a 401 carries CORS headers
            extra.extend(cors_headers(self.access.cors, origin))
            if method == "OPTIONS":
                return _respond(start_response, 200, extra)

        if self.access.auth_enabled:
            extra.append(("WWW-Authenticate", CHALLENGE))

        credentials = credentials_from(environ.get("HTTP_AUTHORIZATION"))
        user, authorized = self.authenticator.authenticate(credentials)
        if not authorized:
            self.logger.auth_fail(client_addr(environ), credentials[0] if credentials else None)
            return _respond(start_response, 401, extra)

        user = self._effective_user(user)
        reason = self.acl.check(user, method, path)
        if reason is not None:
            self.logger.denied(user.username if user else "-", method, path, reason)
            return _respond(start_response, 403, extra)

        self.logger.request(user.username, client_addr(environ), method, path)
        engine = self.handlers.handler_for(user)

        if method == "GET" and engine.is_collection(path):
            environ["REQUEST_METHOD"] = "PROPFIND"
            if not environ.get("HTTP_DEPTH"):
                environ["HTTP_DEPTH"] = "1"

        result = engine(environ, _with_headers(start_response, extra))
        if method == "HEAD":
            return _without_body(result)
        return result

    def _effective_user(self, user: Optional[User]) -> Optional[User]:
        if user is not None:
            return user
        return self.access.anonymous


def _respond(start_response, status: int, headers: List[Header]) -> List[bytes]:
    start_response(
        f"{status} {_REASONS[status]}",
        headers + [("Content-Length", "0")],
    )
    return []


def _with_headers(start_response, extra: List[Header]):
    """Prefix the gate's headers; the engine wins on a name clash."""
    if not extra:
        return start_response

    def wrapped(status: str, headers: List[Tuple[str, str]], exc_info=None):
        own = {k.lower() for k, _ in headers}
        merged = [(k, v) for k, v in extra if k.lower() not in own] + list(headers)
        return start_response(status, merged, exc_info)

    return wrapped


def _without_body(result: Iterable[bytes]) -> List[bytes]:
    # drain so the engine's start_response has run, then drop the bytes
    try:
        for _ in result:
            pass
    finally:
        close = getattr(result, "close", None)
        if close is not None:
            close()
    return []
