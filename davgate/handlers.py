"""
davgate.handlers
~~~~~~~~~~~~~~~~
One protocol engine per user, created on first use and kept for the life
of the process.  Engines are keyed by username.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional, Protocol

from .auth import User
from .logger import GateLogger


class Engine(Protocol):
    """A WSGI application serving one user's tree."""

    def __call__(self, environ, start_response): ...

    def is_collection(self, path: str) -> bool: ...


EngineFactory = Callable[[User], Engine]


class HandlerCache:
    def __init__(self, factory: EngineFactory, logger: Optional[GateLogger] = None) -> None:
        self._factory = factory
        self._logger = logger
        self._handlers: Dict[str, Engine] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def handler_for(self, user: User) -> Engine:
        key = user.username
        handler = self._handlers.get(key)
        if handler is not None:
            return handler

        # serialize construction per user, not across users
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            handler = self._handlers.get(key)
            if handler is None:
                handler = self._factory(user)
                self._handlers[key] = handler
                if self._logger:
                    self._logger.engine(user.username, user.root)
        return handler

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, username: str) -> bool:
        return username in self._handlers
