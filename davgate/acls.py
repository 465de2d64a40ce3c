"""
davgate.acls
~~~~~~~~~~~~
Per-user path rules and the modify gate.

Rules are evaluated in declared order and the first match wins; a user
without rules may go anywhere.  Write-class methods additionally need the
user's ``modify`` flag.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, FrozenSet, Optional, Pattern

if TYPE_CHECKING:
    from .auth import User

MODIFY_METHODS: FrozenSet[str] = frozenset(
    {"PUT", "POST", "MKCOL", "DELETE", "COPY", "MOVE"}
)


def is_modify_method(method: str) -> bool:
    """Exact, case-sensitive membership in the write class."""
    return method in MODIFY_METHODS


@dataclass(frozen=True, slots=True)
class Rule:
    path: str
    allow: bool = False
    regex: Optional[Pattern[str]] = field(default=None, compare=False)

    @classmethod
    def prefix(cls, path: str, allow: bool = False) -> "Rule":
        return cls(path=path, allow=allow)

    @classmethod
    def pattern(cls, expr: str, allow: bool = False) -> "Rule":
        # re.error surfaces here, i.e. while the configuration is built
        return cls(path=expr, allow=allow, regex=re.compile(expr))

    def matches(self, path: str) -> bool:
        if self.regex is not None:
            return self.regex.search(path) is not None
        return path.startswith(self.path)


class ACLChecker:
    def path_allowed(self, user: User, path: str) -> bool:
        for rule in user.rules:
            if rule.matches(path):
                return rule.allow
        return True

    def permit(self, user: User | None, method: str, target: str) -> bool:  # noqa: D401
        """Return True if the request is allowed."""
        return self.check(user, method, target) is None

    def check(self, user: User | None, method: str, target: str) -> Optional[str]:
        """Return None when allowed, else the reason for the denial."""
        if user is None:
            return "no_identity"
        if not self.path_allowed(user, target):
            return "rules"
        if not user.modify and is_modify_method(method):
            return "modify"
        return None
