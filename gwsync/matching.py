from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType


class SelectorGroup:
    """Label key/value pairs that must all be present on a service."""

    __slots__ = ("_labels",)

    def __init__(self, labels: Mapping[str, str]):
        self._labels = MappingProxyType(dict(labels))

    @property
    def labels(self) -> Mapping[str, str]:
        return self._labels

    def satisfied_by(self, labels: Mapping[str, str]) -> bool:
        for key, required in self._labels.items():
            if key not in labels or labels[key] != required:
                return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SelectorGroup):
            return NotImplemented
        return dict(self._labels) == dict(other._labels)

    def __hash__(self) -> int:
        return hash(frozenset(self._labels.items()))

    def __repr__(self) -> str:
        return f"SelectorGroup({dict(self._labels)!r})"


class SelectorMatcher:
    """OR of ANDs over the configured selector groups.

    No groups configured means nothing matches.
    """

    def __init__(self, groups: Iterable[SelectorGroup | Mapping[str, str]] = ()):
        self.groups: tuple[SelectorGroup, ...] = tuple(
            g if isinstance(g, SelectorGroup) else SelectorGroup(g) for g in groups
        )

    def matches(self, labels: Mapping[str, str]) -> bool:
        for group in self.groups:
            if group.satisfied_by(labels):
                return True
        return False


def parse_selectors(raw: str) -> list[SelectorGroup]:
    """Parse ``k=v,k2=v2;k3=v3`` into selector groups.

    Groups are separated by ``;`` and pairs by ``,``. Blank groups are dropped.
    """
    groups: list[SelectorGroup] = []
    for chunk in raw.split(";"):
        pairs: dict[str, str] = {}
        for part in chunk.split(","):
            part = part.strip()
            if not part:
                continue
            if "=" not in part:
                raise ValueError(f"Invalid selector '{part}'. Expected key=value.")
            key, value = part.split("=", 1)
            key = key.strip()
            if not key:
                raise ValueError(f"Invalid selector '{part}'. Empty label key.")
            pairs[key] = value.strip()
        if pairs:
            groups.append(SelectorGroup(pairs))
    return groups
