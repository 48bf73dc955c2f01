"""Registry of upstream analysis services keyed by service id."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from framesense.health import ComponentHealth, probe
from framesense.services.base import AnalysisService

log = structlog.get_logger(__name__)


class ServiceRegistry:
    """Holds the AnalysisService instances the router may dispatch to."""

    def __init__(self, services: Iterable[AnalysisService] = ()) -> None:
        self._services: dict[str, AnalysisService] = {}
        for service in services:
            self.register(service)

    def register(self, service: AnalysisService) -> None:
        """Add a service.

        Raises:
            ValueError: a service with the same id is already registered
        """
        if service.service_id in self._services:
            raise ValueError(f"Service {service.service_id} already registered")
        self._services[service.service_id] = service
        log.info(
            "service_registry.registered",
            service_id=service.service_id,
            capabilities=sorted(service.capabilities()),
        )

    def unregister(self, service_id: str) -> bool:
        removed = self._services.pop(service_id, None) is not None
        if removed:
            log.info("service_registry.unregistered", service_id=service_id)
        return removed

    def get(self, service_id: str) -> AnalysisService | None:
        return self._services.get(service_id)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._services

    def __len__(self) -> int:
        return len(self._services)

    @property
    def service_ids(self) -> list[str]:
        return list(self._services)

    def find_by_capability(self, capability: str) -> list[AnalysisService]:
        return [s for s in self._services.values() if capability in s.capabilities()]

    async def health_all(self, *, timeout: float = 5.0) -> dict[str, ComponentHealth]:
        """Probe every registered service; failures are reported, not raised."""
        results: dict[str, ComponentHealth] = {}
        for service_id, service in self._services.items():
            results[service_id] = await probe(service.health, timeout=timeout)
        return results
