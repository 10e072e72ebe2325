from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .apimanager import ApiManager
from .registry import ServiceRecord

GATE_TRUNCATE = "truncate"
GATE_SKIP = "skip"


@dataclass(frozen=True)
class ServiceDTO:
    id: str
    container: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class RouteEntry:
    identity: str
    targets: tuple[str, ...]
    params: dict[str, str]
    meta: ServiceDTO


@dataclass(frozen=True)
class DiffResult:
    to_add: list[RouteEntry] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)
    next_known: frozenset[str] = frozenset()
    # First matched service the API manager did not know about, if any.
    gated_identity: str | None = None
    truncated: bool = False


def param_value(value: str | None) -> str:
    return value if value is not None else ""


def route_entry(record: ServiceRecord) -> RouteEntry:
    """Build the published route for a matched service."""
    dto = ServiceDTO(id=record.identity, container=record.container, version=record.version)
    params = {
        "id": param_value(dto.id),
        "container": param_value(dto.container),
        "version": param_value(dto.version),
    }
    target = f"{record.base_url}/{record.identity}"
    return RouteEntry(identity=record.identity, targets=(target,), params=params, meta=dto)


def diff_routes(
    previous: Iterable[str],
    matched: Sequence[RouteEntry],
    api_manager: ApiManager | None = None,
    gate_policy: str = GATE_TRUNCATE,
) -> DiffResult:
    """Compare the published identities with this cycle's matches.

    Adds come out in registry order; removes are whatever was known before
    and not confirmed this cycle. With an API manager configured, a match it
    has no mapping for is not routable yet: under ``truncate`` the rest of the
    snapshot is not evaluated this cycle, under ``skip`` only that entry is
    passed over.
    """
    if gate_policy not in {GATE_TRUNCATE, GATE_SKIP}:
        raise ValueError(f"Unknown gate policy '{gate_policy}'.")

    previous = list(previous)
    known = set(previous)
    remaining = dict.fromkeys(previous)  # ordered set
    to_add: list[RouteEntry] = []
    gated: str | None = None
    truncated = False

    for entry in matched:
        if api_manager is not None and api_manager.get_service_mapping(entry.identity) is None:
            if gated is None:
                gated = entry.identity
            if gate_policy == GATE_TRUNCATE:
                truncated = True
                break
            continue
        if entry.identity not in known:
            known.add(entry.identity)
            to_add.append(entry)
        remaining.pop(entry.identity, None)

    to_remove = list(remaining)
    for identity in to_remove:
        known.discard(identity)

    return DiffResult(
        to_add=to_add,
        to_remove=to_remove,
        next_known=frozenset(known),
        gated_identity=gated,
        truncated=truncated,
    )
