from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

from .db import utc_now
from .diff import ServiceDTO


class MappingRulePublisher(Protocol):
    def update_mapping_rules(
        self,
        is_removal: bool,
        identity: str,
        targets: Sequence[str] | None = None,
        params: Mapping[str, str] | None = None,
        meta: ServiceDTO | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class MappingRule:
    identity: str
    targets: tuple[str, ...]
    params: dict[str, str]
    meta: ServiceDTO | None = None
    updated_at: str = field(default_factory=utc_now)


class HttpMappingRules:
    """In-memory HTTP mapping rules: context path -> upstream targets.

    Written by the reconciliation worker, read by request handlers.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.rules: dict[str, MappingRule] = {}
        self.rr_index: dict[str, int] = {}  # identity -> idx

    def update_mapping_rules(
        self,
        is_removal: bool,
        identity: str,
        targets: Sequence[str] | None = None,
        params: Mapping[str, str] | None = None,
        meta: ServiceDTO | None = None,
    ) -> None:
        with self.lock:
            if is_removal:
                self.rules.pop(identity, None)
                self.rr_index.pop(identity, None)
                return
            if not targets:
                raise ValueError(f"Mapping rule for '{identity}' needs at least one target.")
            self.rules[identity] = MappingRule(
                identity=identity,
                targets=tuple(targets),
                params=dict(params or {}),
                meta=meta,
            )

    def get_rule(self, identity: str) -> MappingRule | None:
        with self.lock:
            return self.rules.get(identity)

    def list_rules(self) -> list[MappingRule]:
        with self.lock:
            return [self.rules[k] for k in sorted(self.rules)]

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i
