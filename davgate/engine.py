"""
davgate.engine
~~~~~~~~~~~~~~
WebDAV protocol engine built on wsgidav.  Each engine serves one
filesystem root with its own lock storage; authentication has already
happened in front of it, so wsgidav itself runs with anonymous access.
"""

from __future__ import annotations

import os
import posixpath
from typing import Any, Dict, Optional

from wsgidav.fs_dav_provider import FilesystemProvider
from wsgidav.lock_man.lock_storage import LockStorageDict
from wsgidav.wsgidav_app import WsgiDAVApp

from .auth import User


class DavEngine:
    def __init__(self, root: str, lock_storage: Optional[LockStorageDict] = None) -> None:
        self.root = os.path.abspath(root)
        self.lock_storage = lock_storage if lock_storage is not None else LockStorageDict()
        self.app = WsgiDAVApp(self._dav_config())

    def _dav_config(self) -> Dict[str, Any]:
        return {
            "provider_mapping": {"/": FilesystemProvider(self.root)},
            "simple_dc": {"user_mapping": {"*": True}},
            "http_authenticator": {
                "domain_controller": None,
                "accept_basic": True,
                "accept_digest": False,
                "default_to_digest": False,
            },
            "lock_storage": self.lock_storage,
            "property_manager": True,
            "dir_browser": {"enable": False},
            "verbose": 1,
            "logging": {"enable": False},
        }

    def __call__(self, environ, start_response):
        return self.app(environ, start_response)

    def fs_path(self, path: str) -> str:
        """Map a request path onto the root; never escapes it."""
        rel = posixpath.normpath("/" + path).lstrip("/")
        if not rel:
            return self.root
        return os.path.join(self.root, *rel.split("/"))

    def is_collection(self, path: str) -> bool:
        return os.path.isdir(self.fs_path(path))


def build_engine(user: User) -> DavEngine:
    """Engine factory for :class:`davgate.handlers.HandlerCache`."""
    return DavEngine(user.root, LockStorageDict())
