from __future__ import annotations

import sqlite3
import sys
from dataclasses import dataclass, field
from threading import Event, Thread, current_thread

from . import db
from .apimanager import ApiManager
from .diff import GATE_SKIP, GATE_TRUNCATE, DiffResult, RouteEntry, diff_routes, route_entry
from .registry import RegistryFetcher, RegistryUnavailable
from .runtime import MappingRulePublisher
from .matching import SelectorMatcher

CYCLE_OK = "ok"
CYCLE_TRANSIENT = "transient_failure"
CYCLE_UNEXPECTED = "unexpected"


@dataclass
class KnownRouteSet:
    """Routes currently published to the rule table, keyed by context path.

    Only the reconciliation worker writes to it.
    """

    routes: dict[str, RouteEntry] = field(default_factory=dict)

    def __contains__(self, identity: object) -> bool:
        return identity in self.routes

    def __len__(self) -> int:
        return len(self.routes)

    def identities(self) -> list[str]:
        return list(self.routes)

    def add(self, entry: RouteEntry) -> None:
        self.routes[entry.identity] = entry

    def discard(self, identity: str) -> None:
        self.routes.pop(identity, None)


@dataclass(frozen=True)
class CycleResult:
    status: str
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    gated_identity: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == CYCLE_OK


class HttpMappingCache:
    """Polls the registry and keeps the HTTP mapping rules in sync with it.

    Every cycle runs fetch -> match -> diff -> publish on a single worker
    thread. Cycles never overlap: the next one starts ``poll_interval_s``
    after the previous one finished. A failed cycle publishes nothing and
    leaves the known routes untouched. The registry is connected lazily, so
    one that is down at startup only fails cycles until it comes back.
    """

    def __init__(
        self,
        publisher: MappingRulePublisher,
        matcher: SelectorMatcher,
        registry: RegistryFetcher,
        api_manager: ApiManager | None = None,
        gate_policy: str = GATE_TRUNCATE,
        poll_interval_s: float = 5.0,
    ):
        if gate_policy not in {GATE_TRUNCATE, GATE_SKIP}:
            raise ValueError(f"Unknown gate policy '{gate_policy}'. Use truncate or skip.")
        self.publisher = publisher
        self.matcher = matcher
        self.registry = registry
        self.api_manager = api_manager
        self.gate_policy = gate_policy
        if float(poll_interval_s) <= 0:
            raise ValueError(f"Poll interval must be positive, got {poll_interval_s!r}.")
        self.poll_interval_s = float(poll_interval_s)
        self.known = KnownRouteSet()
        self.phase = "idle"
        self.cycles = 0
        self.last_result: CycleResult | None = None
        self._last_gated: str | None = None
        self._stop = Event()
        self._thr: Thread | None = None

    def init(self) -> None:
        """Start polling right away; the registry is connected by the first cycle."""
        if self._stop.is_set():
            raise RuntimeError("HttpMappingCache cannot be restarted after shutdown.")
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name="gwsync-reconciler", daemon=True)
        self._thr.start()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop scheduling, let an in-flight cycle finish, release the registry."""
        self._stop.set()
        if self._thr and self._thr is not current_thread():
            self._thr.join(timeout)
        self.registry.close()
        self.phase = "stopped"

    @property
    def running(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def _loop(self) -> None:
        self._log("INFO", "Reconciler started")
        while not self._stop.is_set():
            result = self.run_cycle()
            if not result.ok:
                self._log("ERROR", f"Reconciliation cycle failed ({result.status}): {result.error}")
            self._stop.wait(self.poll_interval_s)
        self._log("INFO", "Reconciler stopped")

    def _log(self, level: str, message: str, route: str | None = None) -> None:
        # The worker must outlive a broken event store.
        try:
            db.log_event(level, message, route=route)
        except sqlite3.Error as e:
            print(f"[gwsync] {level} {message} (event log unavailable: {e})", file=sys.stderr)

    def run_cycle(self) -> CycleResult:
        """Run one fetch -> match -> diff -> publish pass."""
        self.cycles += 1
        try:
            result = self._cycle()
        except RegistryUnavailable as e:
            result = CycleResult(status=CYCLE_TRANSIENT, error=str(e))
        except Exception as e:
            result = CycleResult(status=CYCLE_UNEXPECTED, error=f"{type(e).__name__}: {e}")
        finally:
            if self.phase != "stopped":
                self.phase = "idle"
        self.last_result = result
        return result

    def _cycle(self) -> CycleResult:
        self.phase = "fetching"
        self.registry.connect()
        services = self.registry.fetch()

        self.phase = "matching"
        matched = [route_entry(s) for s in services if self.matcher.matches(s.labels)]

        self.phase = "diffing"
        diff = diff_routes(self.known.identities(), matched, self.api_manager, self.gate_policy)
        self._note_gated(diff)

        self.phase = "publishing"
        added, removed = self._publish(diff)
        return CycleResult(status=CYCLE_OK, added=added, removed=removed, gated_identity=diff.gated_identity)

    def _publish(self, diff: DiffResult) -> tuple[tuple[str, ...], tuple[str, ...]]:
        # Known routes follow each successful publish so they always mirror
        # what the rule table was told, even if a later call fails.
        added: list[str] = []
        for entry in diff.to_add:
            self.publisher.update_mapping_rules(False, entry.identity, list(entry.targets), dict(entry.params), entry.meta)
            self.known.add(entry)
            added.append(entry.identity)
            self._log("INFO", f"Adding {', '.join(entry.targets)}", route=entry.identity)

        removed: list[str] = []
        for identity in diff.to_remove:
            self.publisher.update_mapping_rules(True, identity, None, None, None)
            self.known.discard(identity)
            removed.append(identity)
            self._log("INFO", f"Removing {identity}", route=identity)
        return tuple(added), tuple(removed)

    def _note_gated(self, diff: DiffResult) -> None:
        if diff.gated_identity and diff.gated_identity != self._last_gated:
            detail = "; remaining services deferred to a later cycle" if diff.truncated else ""
            self._log(
                "DEBUG",
                f"Service is not registered in the API manager and is not yet available{detail}",
                route=diff.gated_identity,
            )
        self._last_gated = diff.gated_identity
