from __future__ import annotations

from pydantic import BaseModel, Field


class MappingRequest(BaseModel):
    api_name: str | None = Field(None, description="Name of the API the service is published under")


class MappingOut(BaseModel):
    identity: str
    api_name: str | None = None
    created_at: str


class RouteOut(BaseModel):
    identity: str
    targets: list[str]
    params: dict[str, str]
    updated_at: str


class ReconcilerStatus(BaseModel):
    running: bool
    phase: str
    cycles: int
    known_routes: int
    last_status: str | None = None
    last_error: str | None = None
