from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx


class RegistryUnavailable(Exception):
    """The registry could not return a complete service listing."""


@dataclass(frozen=True)
class ServiceRecord:
    identity: str
    labels: dict[str, str] = field(default_factory=dict)
    base_url: str = ""
    namespace: str | None = None

    @property
    def container(self) -> str | None:
        return self.labels.get("container")

    @property
    def version(self) -> str | None:
        return self.labels.get("version")


class RegistryFetcher(Protocol):
    def connect(self) -> None: ...

    def fetch(self) -> list[ServiceRecord]: ...

    def close(self) -> None: ...


class StaticRegistry:
    """Registry backed by an in-memory list; replace ``services`` to change it."""

    def __init__(self, services: Iterable[ServiceRecord] = ()):
        self.services: list[ServiceRecord] = list(services)

    def connect(self) -> None:
        return None

    def fetch(self) -> list[ServiceRecord]:
        return list(self.services)

    def close(self) -> None:
        return None


class KubernetesRegistry:
    """Lists services through the Kubernetes REST API.

    The label set of a record is the service's pod selector, and its base URL
    points at the cluster IP and first declared port.
    """

    def __init__(
        self,
        master_url: str,
        namespace: str | None = None,
        timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.master_url = master_url.rstrip("/")
        self.namespace = namespace or None
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.Client | None = None

    def connect(self) -> None:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.master_url,
                timeout=self.timeout_s,
                follow_redirects=False,
                transport=self._transport,
            )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _services_path(self) -> str:
        if self.namespace:
            return f"/api/v1/namespaces/{self.namespace}/services"
        return "/api/v1/services"

    def fetch(self) -> list[ServiceRecord]:
        if self._client is None:
            raise RegistryUnavailable("Kubernetes client is not connected.")
        try:
            resp = self._client.get(self._services_path())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RegistryUnavailable(f"Kubernetes API returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RegistryUnavailable(f"Kubernetes API unreachable: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise RegistryUnavailable("Kubernetes API returned invalid JSON") from e

        if not isinstance(data, dict) or not isinstance(data.get("items"), list):
            raise RegistryUnavailable(f"Unexpected service list payload: {type(data).__name__}")
        return [service_record_from_k8s(item) for item in data["items"]]


def service_record_from_k8s(item: dict[str, Any]) -> ServiceRecord:
    meta = item.get("metadata") or {}
    spec = item.get("spec") or {}
    name = meta.get("name")
    if not name:
        raise RegistryUnavailable("Service without metadata.name in listing")
    namespace = meta.get("namespace") or "default"
    selector = {str(k): str(v) for k, v in (spec.get("selector") or {}).items()}
    return ServiceRecord(
        identity=name,
        labels=selector,
        base_url=_service_url(name, namespace, spec),
        namespace=namespace,
    )


def _service_url(name: str, namespace: str, spec: dict[str, Any]) -> str:
    ports = spec.get("ports") or []
    port = int(ports[0].get("port", 80)) if ports else 80
    host = spec.get("clusterIP")
    if not host or host == "None":
        host = f"{name}.{namespace}.svc"
    scheme = "https" if port == 443 else "http"
    return f"{scheme}://{host}:{port}"
