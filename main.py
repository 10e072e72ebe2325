from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict

import httpx
from fastapi import FastAPI, HTTPException, Request, Response

from gwsync import db
from gwsync.api_models import MappingOut, MappingRequest, ReconcilerStatus, RouteOut
from gwsync.apimanager import DbApiManager
from gwsync.docker_ops import DockerRegistry
from gwsync.gateway import NoRoute, resolve_upstream
from gwsync.reconciler import HttpMappingCache
from gwsync.registry import KubernetesRegistry, RegistryFetcher, StaticRegistry
from gwsync.runtime import HttpMappingRules
from gwsync.matching import SelectorMatcher, parse_selectors
from gwsync.settings import settings


rules = HttpMappingRules()
cache: HttpMappingCache | None = None

# Hop-by-hop headers are not forwarded in either direction.
HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "content-encoding",
}


def build_registry() -> RegistryFetcher:
    kind = settings.registry.strip().lower()
    if kind == "kubernetes":
        return KubernetesRegistry(
            settings.kubernetes_master,
            namespace=settings.namespace,
            timeout_s=settings.registry_timeout_s,
        )
    if kind == "docker":
        return DockerRegistry(label_prefix=settings.docker_label_prefix)
    if kind == "static":
        return StaticRegistry()
    raise ValueError(f"Unknown registry '{settings.registry}'. Use kubernetes, docker or static.")


def build_cache() -> HttpMappingCache:
    return HttpMappingCache(
        publisher=rules,
        matcher=SelectorMatcher(parse_selectors(settings.selectors)),
        registry=build_registry(),
        api_manager=DbApiManager() if settings.use_api_manager else None,
        gate_policy=settings.gate_policy,
        poll_interval_s=settings.poll_interval_s,
    )


def _upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.gateway_timeout_s, follow_redirects=False)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global cache
    db.init_db()
    cache = build_cache()
    cache.init()
    try:
        yield
    finally:
        cache.shutdown(timeout=settings.registry_timeout_s)


app = FastAPI(title="gwsync gateway", lifespan=lifespan)


@app.get("/_gateway/health")
def health() -> ReconcilerStatus:
    last = cache.last_result if cache else None
    return ReconcilerStatus(
        running=bool(cache and cache.running),
        phase=cache.phase if cache else "idle",
        cycles=cache.cycles if cache else 0,
        known_routes=len(cache.known) if cache else 0,
        last_status=last.status if last else None,
        last_error=last.error if last else None,
    )


@app.get("/_gateway/routes")
def list_routes() -> list[RouteOut]:
    return [
        RouteOut(identity=r.identity, targets=list(r.targets), params=r.params, updated_at=r.updated_at)
        for r in rules.list_rules()
    ]


@app.get("/_gateway/events")
def list_events(limit: int = 100) -> list[dict]:
    return db.latest_events(max(1, min(limit, 1000)))


@app.get("/_gateway/mappings")
def list_mappings() -> list[MappingOut]:
    return [MappingOut(**asdict(m)) for m in db.list_mappings()]


@app.get("/_gateway/mappings/{identity}")
def get_mapping(identity: str) -> MappingOut:
    row = db.get_mapping(identity)
    if row is None:
        raise HTTPException(status_code=404, detail=f"No mapping for '{identity}'.")
    return MappingOut(**asdict(row))


@app.put("/_gateway/mappings/{identity}")
def put_mapping(identity: str, req: MappingRequest) -> MappingOut:
    row = db.upsert_mapping(identity, req.api_name)
    db.log_event("INFO", "Registered service mapping", route=identity)
    return MappingOut(**asdict(row))


@app.delete("/_gateway/mappings/{identity}")
def delete_mapping(identity: str) -> dict[str, str]:
    if not db.delete_mapping(identity):
        raise HTTPException(status_code=404, detail=f"No mapping for '{identity}'.")
    db.log_event("INFO", "Removed service mapping", route=identity)
    return {"status": "deleted", "identity": identity}


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def proxy(path: str, request: Request) -> Response:
    try:
        url, _rule = resolve_upstream(path, rules)
    except NoRoute as e:
        raise HTTPException(status_code=404, detail=str(e))

    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_HEADERS}
    body = await request.body()
    try:
        async with _upstream_client() as client:
            resp = await client.request(
                request.method,
                url,
                params=str(request.query_params),
                headers=headers,
                content=body,
            )
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"Upstream error: {type(e).__name__}")

    out_headers = {k: v for k, v in resp.headers.items() if k.lower() not in HOP_HEADERS}
    return Response(content=resp.content, status_code=resp.status_code, headers=out_headers)
