# src/esp/runtime/gates.py
from __future__ import annotations

"""Authorization capability seam.

The core never embeds policy. It asks an injected gate a single question,
`can_invoke(caller, path, operation) -> bool`, before every mutating catalog
or ledger call and before the delivery layer's locate step.

Path conventions:
  - catalog operations pass the resource path
  - ledger operations pass the content address
  - header / site-wide operations pass SITE_SCOPE ("*")

PolicyGate is a small reference collaborator driven by a YAML file:

    default: deny
    rules:
      - operation: GET          # Operation name or "*"
        callers: ["*"]          # caller ids or "*"
        paths: ["/"]            # path prefixes or "*"
      - operation: PUT
        callers: ["alice"]
        paths: ["/site/"]
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import yaml

Json = Dict[str, Any]

SITE_SCOPE = "*"


class Operation(str, Enum):
    HEAD = "HEAD"
    GET = "GET"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    LOCATE = "LOCATE"
    DEFINE = "DEFINE"
    REGISTER = "REGISTER"
    COLLECT_ROYALTIES = "COLLECT_ROYALTIES"
    UPDATE_PUBLISHER = "UPDATE_PUBLISHER"


class AuthorizationGate(Protocol):
    def can_invoke(self, caller: Optional[str], path: str, operation: Operation) -> bool: ...


class AllowAllGate:
    """Permissive gate for single-tenant deployments and tests."""

    def can_invoke(self, caller: Optional[str], path: str, operation: Operation) -> bool:
        return True


class CallableGate:
    def __init__(self, fn: Callable[[Optional[str], str, Operation], bool]) -> None:
        self._fn = fn

    def can_invoke(self, caller: Optional[str], path: str, operation: Operation) -> bool:
        return bool(self._fn(caller, path, operation))


@dataclass(frozen=True)
class PolicyRule:
    operation: str
    callers: Tuple[str, ...] = ("*",)
    paths: Tuple[str, ...] = ("*",)

    def matches(self, caller: Optional[str], path: str, operation: Operation) -> bool:
        if self.operation != "*" and self.operation != operation.value:
            return False
        c = str(caller or "")
        if "*" not in self.callers and c not in self.callers:
            return False
        if "*" in self.paths:
            return True
        return any(str(path).startswith(p) for p in self.paths)


def _as_str_tuple(v: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if v is None:
        return default
    if isinstance(v, str):
        return (v.strip(),)
    if isinstance(v, list):
        return tuple(str(x).strip() for x in v if str(x).strip())
    raise ValueError(f"policy field must be a string or list (got {type(v).__name__})")


@dataclass
class PolicyGate:
    rules: List[PolicyRule] = field(default_factory=list)
    default_allow: bool = False

    def can_invoke(self, caller: Optional[str], path: str, operation: Operation) -> bool:
        for rule in self.rules:
            if rule.matches(caller, path, operation):
                return True
        return bool(self.default_allow)

    @classmethod
    def from_dict(cls, obj: Any) -> "PolicyGate":
        if not isinstance(obj, dict):
            raise ValueError("policy must be a mapping")

        default = str(obj.get("default", "deny")).strip().lower()
        if default not in {"allow", "deny"}:
            raise ValueError(f"policy default must be 'allow' or 'deny'; got: {default!r}")

        raw_rules = obj.get("rules") or []
        if not isinstance(raw_rules, list):
            raise ValueError("policy rules must be a list")

        known = {op.value for op in Operation} | {"*"}
        rules: List[PolicyRule] = []
        for i, r in enumerate(raw_rules):
            if not isinstance(r, dict):
                raise ValueError(f"policy rule #{i} must be a mapping")
            op = str(r.get("operation", "*")).strip().upper()
            if op not in known:
                raise ValueError(f"policy rule #{i}: unknown operation {op!r}")
            rules.append(
                PolicyRule(
                    operation=op,
                    callers=_as_str_tuple(r.get("callers"), ("*",)),
                    paths=_as_str_tuple(r.get("paths"), ("*",)),
                )
            )

        return cls(rules=rules, default_allow=(default == "allow"))

    @classmethod
    def load(cls, path: str) -> "PolicyGate":
        p = Path(path)
        obj = yaml.safe_load(p.read_text(encoding="utf-8"))
        return cls.from_dict(obj or {})


__all__ = [
    "AllowAllGate",
    "AuthorizationGate",
    "CallableGate",
    "Operation",
    "PolicyGate",
    "PolicyRule",
    "SITE_SCOPE",
]
