from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from . import db


@dataclass(frozen=True)
class ServiceMapping:
    identity: str
    api_name: str | None = None


class ApiManager(Protocol):
    def get_service_mapping(self, identity: str) -> ServiceMapping | None: ...


class DbApiManager:
    """Downstream registrations kept in the local service_mappings table."""

    def get_service_mapping(self, identity: str) -> ServiceMapping | None:
        row = db.get_mapping(identity)
        if row is None:
            return None
        return ServiceMapping(identity=row.identity, api_name=row.api_name)
