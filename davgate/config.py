"""
davgate.config
~~~~~~~~~~~~~~
Process settings come from the environment (optionally a ``.env`` file);
users, rules and CORS come from a JSON access file.  Anything wrong with
either raises :class:`ConfigError` before the server starts listening.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from .acls import Rule
from .auth import User
from .cors import CorsPolicy

log = logging.getLogger("davgate.config")

ANONYMOUS = "-"
_ENV_PREFIX = "{env}"
MAX_BODY = 1 << 30  # bytes


class ConfigError(Exception):
    pass


@dataclass
class Config:
    listen_host: str
    listen_port: int
    use_tls: bool
    tls_cert: str
    tls_key: str
    auth_enabled: bool
    scope: str
    modify: bool
    config_file: str
    log_path: str
    log_level: str
    workers: int
    max_body: int


@dataclass(frozen=True)
class AccessConfig:
    auth_enabled: bool
    cors: CorsPolicy = field(default_factory=CorsPolicy)
    users: Mapping[str, User] = field(default_factory=dict)
    anonymous: Optional[User] = None


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def load_config() -> Config:
    load_dotenv(find_dotenv(usecwd=True), override=True)
    level = os.getenv("DAV_LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"DAV_LOG_LEVEL: unknown level {level!r}")
    max_body = _env_int("DAV_MAX_BODY", MAX_BODY)
    if max_body <= 0:
        raise ConfigError(f"DAV_MAX_BODY must be positive, got {max_body}")
    return Config(
        listen_host=os.getenv("DAV_LISTEN_HOST", "0.0.0.0"),
        listen_port=_env_int("DAV_LISTEN_PORT", 8080),
        use_tls=_env_bool("DAV_USE_TLS", "false"),
        tls_cert=os.getenv("DAV_TLS_CERT", "cert.pem"),
        tls_key=os.getenv("DAV_TLS_KEY", "key.pem"),
        auth_enabled=_env_bool("DAV_AUTH_ENABLED", "true"),
        scope=os.getenv("DAV_SCOPE", "."),
        modify=_env_bool("DAV_MODIFY", "true"),
        config_file=os.getenv("DAV_CONFIG_FILE", "davgate.json"),
        log_path=os.getenv("DAV_LOG_PATH", "davgate.log"),
        log_level=level,
        workers=_env_int("DAV_WORKERS", 16),
        max_body=max_body,
    )


# ------------------------------------------------------------------ #
# access file
# ------------------------------------------------------------------ #


def load_access(cfg: Config) -> AccessConfig:
    path = Path(cfg.config_file)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        log.info("no access file at %s, using defaults", path)
        raw = {}
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be an object")
    return build_access(raw, cfg.auth_enabled, scope=cfg.scope, modify=cfg.modify)


def build_access(
    raw: Mapping[str, Any], auth_enabled: bool, scope: str = ".", modify: bool = True
) -> AccessConfig:
    defaults = User(
        username=ANONYMOUS,
        password="",
        root=_scope(raw.get("scope", scope)),
        modify=_flag(raw, "modify", modify),
        rules=parse_rules(raw.get("rules", [])),
    )

    users: Dict[str, User] = {}
    for entry in raw.get("users", []) or []:
        user = parse_user(entry, defaults)
        if user.username in users:
            raise ConfigError(f"duplicate user {user.username!r}")
        users[user.username] = user

    if users and not auth_enabled:
        log.warning("users are only advisory identities while auth is disabled")
    if auth_enabled and not users:
        log.warning("auth is enabled but no users are configured")

    return AccessConfig(
        auth_enabled=auth_enabled,
        cors=parse_cors(raw.get("cors", {})),
        users=users,
        anonymous=parse_anonymous(raw.get("anonymous", False), defaults),
    )


def _scope(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"scope must be a non-empty string, got {value!r}")
    if not os.path.isdir(value):
        raise ConfigError(f"scope {value!r} is not a directory")
    return os.path.abspath(value)


def _flag(raw: Mapping[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false, got {value!r}")
    return value


def _from_env(value: str) -> str:
    name = value[len(_ENV_PREFIX):]
    if not name:
        raise ConfigError("no environment variable specified")
    resolved = os.getenv(name, "")
    if not resolved:
        raise ConfigError(f"the environment variable {name} is empty")
    return resolved


def parse_rules(raw: Any) -> Tuple[Rule, ...]:
    if not isinstance(raw, list):
        raise ConfigError("rules must be a list")
    rules = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigError(f"rule must be an object, got {entry!r}")
        path = entry.get("path")
        if not isinstance(path, str):
            raise ConfigError(f"rule needs a path: {entry!r}")
        allow = _flag(entry, "allow", False)
        if _flag(entry, "regex", False):
            try:
                rules.append(Rule.pattern(path, allow))
            except re.error as e:
                raise ConfigError(f"bad rule pattern {path!r}: {e}") from e
        else:
            rules.append(Rule.prefix(path, allow))
    return tuple(rules)


def parse_user(entry: Any, defaults: User) -> User:
    if not isinstance(entry, dict):
        raise ConfigError(f"user must be an object, got {entry!r}")

    username = entry.get("username")
    if not isinstance(username, str) or not username:
        raise ConfigError("user needs an username")
    if username.startswith(_ENV_PREFIX):
        username = _from_env(username)
    if username == ANONYMOUS:
        raise ConfigError(f"username {ANONYMOUS!r} is reserved")

    password = entry.get("password", "")
    if isinstance(password, int) and not isinstance(password, bool):
        password = str(password)
    if not isinstance(password, str):
        raise ConfigError(f"password of {username!r} must be a string")
    if password.startswith(_ENV_PREFIX):
        password = _from_env(password)

    return User(
        username=username,
        password=password,
        root=_scope(entry["scope"]) if "scope" in entry else defaults.root,
        modify=_flag(entry, "modify", defaults.modify),
        rules=parse_rules(entry["rules"]) if "rules" in entry else defaults.rules,
    )


def parse_anonymous(raw: Any, defaults: User) -> Optional[User]:
    if raw is False or raw is None:
        return None
    if raw is True:
        return defaults
    if not isinstance(raw, dict):
        raise ConfigError("anonymous must be true, false or an object")
    return User(
        username=ANONYMOUS,
        password="",
        root=_scope(raw["scope"]) if "scope" in raw else defaults.root,
        modify=_flag(raw, "modify", defaults.modify),
        rules=parse_rules(raw["rules"]) if "rules" in raw else defaults.rules,
    )


def _cors_list(raw: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    default: Tuple[str, ...] = () if key == "exposed_headers" else ("*",)
    items = raw.get(key)
    if items is None:
        return default
    if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
        raise ConfigError(f"cors.{key} must be a list of strings")
    return tuple(items) or default


def parse_cors(raw: Any) -> CorsPolicy:
    if not isinstance(raw, dict):
        raise ConfigError("cors must be an object")
    return CorsPolicy(
        enabled=_flag(raw, "enabled", False),
        credentials=_flag(raw, "credentials", False),
        allowed_headers=_cors_list(raw, "allowed_headers"),
        allowed_hosts=_cors_list(raw, "allowed_hosts"),
        allowed_methods=_cors_list(raw, "allowed_methods"),
        exposed_headers=_cors_list(raw, "exposed_headers"),
    )
