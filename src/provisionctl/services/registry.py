"""Closed registry mapping ``(service type, subtype)`` to :class:`Service`."""
from __future__ import annotations

from collections.abc import Iterable

from ..artifacts import ConfigurationDescriptor
from ..contexts import ContextType
from .base import Service, ServiceError, UnknownService


class ServiceRegistry:
    """Look up services and the descriptors they declare per context type."""

    def __init__(self, services: Iterable[Service] = ()) -> None:
        """Register *services* in order."""
        self._services: dict[tuple[str, str], Service] = {}
        for service in services:
            self.register(service)

    def register(self, service: Service) -> None:
        """Add *service*; a type/subtype pair may only be registered once."""
        key = (service.service_type, service.subtype)
        if key in self._services:
            raise ServiceError(f"Service '{service.key}' is already registered.")
        self._services[key] = service

    def services(self) -> list[Service]:
        """Return registered services in registration order."""
        return list(self._services.values())

    def service_types(self) -> list[str]:
        """Return the distinct service types, in registration order."""
        return list(dict.fromkeys(service.service_type for service in self._services.values()))

    def get(self, service_type: str, subtype: str) -> Service:
        """Return the service registered for *service_type* / *subtype*."""
        service = self._services.get((service_type, subtype))
        if service is None:
            known = ", ".join(service.key for service in self._services.values()) or "none"
            raise UnknownService(
                f"Unknown service '{service_type}/{subtype}'. Registered: {known}."
            )
        return service

    def configurations_for(
        self,
        service_type: str,
        subtype: str,
        context_type: ContextType,
    ) -> tuple[ConfigurationDescriptor, ...]:
        """Return the descriptors a service contributes for *context_type*."""
        return self.get(service_type, subtype).configurations_for(context_type)


def default_registry() -> ServiceRegistry:
    """Return the registry of built-in services."""
    from .db import MYSQL
    from .http import APACHE, NGINX

    return ServiceRegistry([APACHE, NGINX, MYSQL])


__all__ = ["ServiceRegistry", "default_registry"]
