from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from wsgiref.util import setup_testing_defaults

import bcrypt
import pytest

from davgate.acls import Rule
from davgate.auth import User
from davgate.config import AccessConfig
from davgate.core import DavGate
from davgate.cors import CorsPolicy
from davgate.handlers import HandlerCache
from davgate.logger import LOGGER_NAME, GateLogger


class FakeEngine:
    """Stands in for wsgidav: records what it was asked to serve."""

    def __init__(self, user: User, collections=("/", "/docs")):
        self.user = user
        self.collections = set(collections)
        self.calls: List[Dict[str, Optional[str]]] = []

    def is_collection(self, path: str) -> bool:
        return path.rstrip("/") in self.collections or path == "/"

    def __call__(self, environ, start_response):
        self.calls.append(
            {
                "method": environ["REQUEST_METHOD"],
                "path": environ["PATH_INFO"],
                "depth": environ.get("HTTP_DEPTH"),
            }
        )
        body = f"{self.user.username} {environ['REQUEST_METHOD']}".encode()
        start_response(
            "207 Multi-Status" if environ["REQUEST_METHOD"] == "PROPFIND" else "200 OK",
            [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))],
        )
        return [body]


@dataclass
class Response:
    status: int
    headers: Dict[str, str]
    body: bytes
    environ: dict


def basic(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


def call(app, method: str = "GET", path: str = "/", headers: Optional[Dict[str, str]] = None) -> Response:
    environ: dict = {}
    setup_testing_defaults(environ)
    environ["REQUEST_METHOD"] = method
    environ["PATH_INFO"] = path
    for k, v in (headers or {}).items():
        environ["HTTP_" + k.upper().replace("-", "_")] = v

    captured: dict = {}

    def start_response(status, hdrs, exc_info=None):
        captured["status"] = status
        captured["headers"] = hdrs

    body = b"".join(app(environ, start_response))
    return Response(
        status=int(captured["status"].split()[0]),
        headers=dict(captured["headers"]),
        body=body,
        environ=environ,
    )


@pytest.fixture(scope="session")
def bob_hash() -> str:
    return "{bcrypt}" + bcrypt.hashpw(b"s3cret", bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture
def bob(bob_hash, tmp_path) -> User:
    return User(
        username="bob",
        password=bob_hash,
        root=str(tmp_path),
        modify=True,
        rules=(Rule.prefix("/private", allow=False),),
    )


@pytest.fixture
def reader(tmp_path) -> User:
    return User(username="reader", password="plain", root=str(tmp_path), modify=False)


@pytest.fixture
def gate_logger(caplog) -> GateLogger:
    logger = GateLogger(level=logging.DEBUG)
    logging.getLogger(LOGGER_NAME).addHandler(caplog.handler)
    yield logger
    logging.getLogger(LOGGER_NAME).removeHandler(caplog.handler)


@pytest.fixture
def engines() -> Dict[str, FakeEngine]:
    return {}


@pytest.fixture
def make_gate(engines, gate_logger):
    def factory(user: User) -> FakeEngine:
        engine = FakeEngine(user)
        engines[user.username] = engine
        return engine

    def make(
        users=(),
        auth_enabled: bool = True,
        cors: Optional[CorsPolicy] = None,
        anonymous: Optional[User] = None,
    ) -> DavGate:
        access = AccessConfig(
            auth_enabled=auth_enabled,
            cors=cors or CorsPolicy(),
            users={u.username: u for u in users},
            anonymous=anonymous,
        )
        return DavGate(access, HandlerCache(factory, gate_logger), gate_logger)

    return make
