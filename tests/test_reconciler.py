import time

import pytest

from docker.errors import DockerException

from gwsync import db, docker_ops
from gwsync.docker_ops import DockerRegistry
from gwsync.diff import ServiceDTO
from gwsync.reconciler import CYCLE_OK, CYCLE_TRANSIENT, CYCLE_UNEXPECTED, HttpMappingCache
from gwsync.registry import RegistryUnavailable
from gwsync.matching import SelectorMatcher

from conftest import (
    FakeApiManager,
    FakeContainer,
    FakeContainers,
    FakeDockerClient,
    FakeRegistry,
    RecordingPublisher,
    svc,
)


def make_cache(registry, publisher, groups=({"container": "foo"},), **kw):
    return HttpMappingCache(publisher, SelectorMatcher(list(groups)), registry, **kw)


def wait_for(cond, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return False


def test_matching_service_is_added_with_params(registry, publisher):
    registry.services = [
        svc("svc1", base_url="http://10.0.0.1:80", container="foo", version="v1"),
        svc("svc2", container="bar"),
    ]
    cache = make_cache(registry, publisher)

    result = cache.run_cycle()

    assert result.status == CYCLE_OK
    assert result.added == ("svc1",)
    assert publisher.calls == [
        (
            False,
            "svc1",
            ["http://10.0.0.1:80/svc1"],
            {"id": "svc1", "container": "foo", "version": "v1"},
            ServiceDTO(id="svc1", container="foo", version="v1"),
        )
    ]
    assert "svc1" in cache.known and "svc2" not in cache.known


def test_second_cycle_with_same_snapshot_publishes_nothing(registry, publisher):
    registry.services = [svc("svc1", container="foo"), svc("svc3", container="foo")]
    cache = make_cache(registry, publisher)

    cache.run_cycle()
    publisher.calls.clear()
    result = cache.run_cycle()

    assert publisher.calls == []
    assert result.added == () and result.removed == ()


def test_vanished_service_is_removed_once(registry, publisher):
    registry.services = [svc("svc1", container="foo")]
    cache = make_cache(registry, publisher)
    cache.run_cycle()

    registry.services = [svc("svc2", container="bar")]
    publisher.calls.clear()
    cache.run_cycle()
    cache.run_cycle()

    assert publisher.calls == [(True, "svc1", None, None, None)]
    assert len(cache.known) == 0


def test_converges_to_last_snapshot(registry, publisher):
    cache = make_cache(registry, publisher)
    snapshots = [
        ["a", "b"],
        ["b", "c", "d"],
        [],
        ["d", "a"],
    ]
    for ids in snapshots:
        registry.services = [svc(i, container="foo") for i in ids]
        cache.run_cycle()

    assert set(cache.known.identities()) == {"a", "d"}
    # replaying the calls gives the same set
    live: set[str] = set()
    for is_removal, identity, *_ in publisher.calls:
        if is_removal:
            live.remove(identity)
        else:
            assert identity not in live
            live.add(identity)
    assert live == {"a", "d"}


def test_adds_come_before_removes_within_a_cycle(registry, publisher):
    registry.services = [svc("old", container="foo")]
    cache = make_cache(registry, publisher)
    cache.run_cycle()

    registry.services = [svc("new1", container="foo"), svc("new2", container="foo")]
    publisher.calls.clear()
    cache.run_cycle()

    assert [(c[0], c[1]) for c in publisher.calls] == [(False, "new1"), (False, "new2"), (True, "old")]


def test_registry_failure_publishes_nothing_and_keeps_state(registry, publisher):
    registry.services = [svc("svc1", container="foo")]
    cache = make_cache(registry, publisher)
    cache.run_cycle()
    publisher.calls.clear()

    registry.error = RegistryUnavailable("connection refused")
    result = cache.run_cycle()

    assert result.status == CYCLE_TRANSIENT
    assert "connection refused" in result.error
    assert publisher.calls == []
    assert cache.known.identities() == ["svc1"]


def test_unexpected_error_is_contained(registry, publisher):
    registry.error = KeyError("boom")
    cache = make_cache(registry, publisher)

    result = cache.run_cycle()

    assert result.status == CYCLE_UNEXPECTED
    assert "KeyError" in result.error
    assert cache.phase == "idle"


def test_publish_failure_keeps_known_routes_consistent(registry):
    class FlakyPublisher(RecordingPublisher):
        def update_mapping_rules(self, is_removal, identity, *args, **kw):
            if identity == "b":
                raise RuntimeError("rule table rejected b")
            super().update_mapping_rules(is_removal, identity, *args, **kw)

    publisher = FlakyPublisher()
    registry.services = [svc("a", container="foo"), svc("b", container="foo")]
    cache = make_cache(registry, publisher)

    result = cache.run_cycle()

    assert result.status == CYCLE_UNEXPECTED
    assert publisher.adds == ["a"]
    assert cache.known.identities() == ["a"]


def test_gate_truncates_cycle(registry, publisher):
    registry.services = [svc("A", container="foo"), svc("B", container="foo"), svc("C", container="foo")]
    cache = make_cache(registry, publisher, api_manager=FakeApiManager(registered={"A", "C"}))

    result = cache.run_cycle()

    assert publisher.adds == ["A"]
    assert publisher.removes == []
    assert result.gated_identity == "B"

    cache.api_manager.registered.add("B")
    cache.run_cycle()
    assert publisher.adds == ["A", "B", "C"]


def test_gate_event_is_logged_once_per_gated_service(registry, publisher):
    registry.services = [svc("B", container="foo")]
    cache = make_cache(registry, publisher, api_manager=FakeApiManager())

    cache.run_cycle()
    cache.run_cycle()

    gated = [e for e in db.latest_events() if e["level"] == "DEBUG" and e["route"] == "B"]
    assert len(gated) == 1


def test_route_churn_is_logged(registry, publisher):
    registry.services = [svc("svc1", base_url="http://h:1", container="foo")]
    cache = make_cache(registry, publisher)
    cache.run_cycle()
    registry.services = []
    cache.run_cycle()

    messages = [e["message"] for e in reversed(db.latest_events())]
    assert messages == ["Adding http://h:1/svc1", "Removing svc1"]


def test_loop_survives_failures_and_stops_on_shutdown(publisher):
    registry = FakeRegistry([svc("svc1", container="foo")])
    registry.error = RegistryUnavailable("down")
    cache = make_cache(registry, publisher, poll_interval_s=0.01)

    cache.init()
    try:
        assert wait_for(lambda: registry.fetches >= 2)
        assert registry.connected
        assert publisher.calls == []

        registry.error = None
        assert wait_for(lambda: "svc1" in cache.known)
    finally:
        cache.shutdown(timeout=5)

    assert not cache.running
    assert registry.closed
    assert cache.phase == "stopped"
    fetches = registry.fetches
    time.sleep(0.05)
    assert registry.fetches == fetches

    errors = [e for e in db.latest_events() if e["level"] == "ERROR"]
    assert errors and "transient_failure" in errors[-1]["message"]


def test_first_cycle_runs_immediately(registry, publisher):
    registry.services = [svc("svc1", container="foo")]
    cache = make_cache(registry, publisher, poll_interval_s=60)

    cache.init()
    try:
        assert wait_for(lambda: registry.fetches == 1, timeout=2)
    finally:
        cache.shutdown(timeout=5)
    assert registry.fetches == 1


def test_cache_cannot_be_restarted(registry, publisher):
    cache = make_cache(registry, publisher, poll_interval_s=60)
    cache.init()
    cache.shutdown(timeout=5)

    with pytest.raises(RuntimeError):
        cache.init()


def test_unknown_gate_policy_fails_fast(registry, publisher):
    with pytest.raises(ValueError):
        make_cache(registry, publisher, gate_policy="sometimes")


@pytest.mark.parametrize("interval", [0, -1, -0.5])
def test_non_positive_poll_interval_is_rejected(registry, publisher, interval):
    with pytest.raises(ValueError):
        make_cache(registry, publisher, poll_interval_s=interval)


def test_docker_down_at_startup_is_a_failed_cycle(monkeypatch, publisher):
    client = FakeDockerClient(FakeContainers([FakeContainer("web-1", {"gwsync.id": "web", "gwsync.container": "foo"})]))
    attempts = []

    def docker_client():
        attempts.append(1)
        if len(attempts) == 1:
            raise DockerException("daemon down")
        return client

    monkeypatch.setattr(docker_ops, "_client", docker_client)
    cache = make_cache(DockerRegistry(), publisher, poll_interval_s=0.01)

    cache.init()
    try:
        assert cache.running
        assert wait_for(lambda: "web" in cache.known)
    finally:
        cache.shutdown(timeout=5)

    assert len(attempts) == 2
    assert publisher.adds == ["web"]
    errors = [e for e in db.latest_events() if e["level"] == "ERROR"]
    assert any("Docker is not available: daemon down" in e["message"] for e in errors)


def test_run_cycle_connects_registry(registry, publisher):
    cache = make_cache(registry, publisher)
    assert not registry.connected

    cache.run_cycle()

    assert registry.connected
