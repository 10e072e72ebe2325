from __future__ import annotations

import docker
from docker.errors import DockerException

from .registry import RegistryUnavailable, ServiceRecord


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


def _client() -> docker.DockerClient:
    return docker.from_env()


class DockerRegistry:
    """Discovers services from running containers labeled for the gateway.

    A container takes part when it carries ``<prefix>id`` (the route identity)
    and ``<prefix>port`` (the port it listens on). Its other labels are
    matched against the selectors with the prefix stripped, so
    ``gwsync.container=foo`` is seen as ``container=foo``.
    """

    def __init__(self, label_prefix: str = "gwsync."):
        self.label_prefix = label_prefix
        self._docker: docker.DockerClient | None = None

    def connect(self) -> None:
        if self._docker is None:
            try:
                self._docker = _client()
            except DockerException as e:
                raise RegistryUnavailable(f"Docker is not available: {e}") from e

    def close(self) -> None:
        if self._docker is not None:
            self._docker.close()
            self._docker = None

    def fetch(self) -> list[ServiceRecord]:
        if self._docker is None:
            raise RegistryUnavailable("Docker client is not connected.")
        id_label = f"{self.label_prefix}id"
        try:
            containers = self._docker.containers.list(filters={"label": id_label, "status": "running"})
        except DockerException as e:
            raise RegistryUnavailable(f"Docker listing failed: {type(e).__name__}: {e}") from e

        records: list[ServiceRecord] = []
        for c in containers:
            raw = dict(c.labels or {})
            try:
                port = int(raw.get(f"{self.label_prefix}port", "80"))
            except ValueError:
                continue  # unroutable, not a registry failure
            records.append(
                ServiceRecord(
                    identity=raw[id_label],
                    labels=self._labels(raw),
                    base_url=container_http_base(c.name, port),
                )
            )
        return records

    def _labels(self, raw: dict[str, str]) -> dict[str, str]:
        # Prefixed labels win over plain ones with the same key.
        out = {k: v for k, v in raw.items() if not k.startswith(self.label_prefix)}
        for key, value in raw.items():
            if not key.startswith(self.label_prefix):
                continue
            key = key[len(self.label_prefix):]
            if key not in {"id", "port"}:
                out[key] = value
        return out
