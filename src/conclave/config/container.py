"""
Dependency injection container for engine services.

Services are built lazily by factory on first use; async resources (the HTTP
client and invoker) are entered on demand and closed by `cleanup()`.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}
        self._async_resources: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name, building it on first use."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def get_async(self, name: str, default: Any = None) -> Any:
        """Get a service, entering it first if it is an async context manager."""
        if name in self._async_resources:
            return self._async_resources[name]

        service = self.get(name, default)
        if hasattr(service, "__aenter__"):
            async_service = await service.__aenter__()
            self._async_resources[name] = async_service
            return async_service

        return service

    async def cleanup(self) -> None:
        """Close every async resource that was entered."""
        for name, resource in self._async_resources.items():
            if hasattr(resource, "__aexit__"):
                try:
                    await resource.__aexit__(None, None, None)
                except Exception as e:
                    logger.error(f"Error cleaning up {name}: {e}")

        for name, service in self._services.items():
            if name not in self._async_resources and hasattr(service, "aclose"):
                try:
                    await service.aclose()
                except Exception as e:
                    logger.error(f"Error closing {name}: {e}")

        self._async_resources.clear()
        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _http_client_factory(c: Container):
        import httpx

        return httpx.AsyncClient(
            timeout=httpx.Timeout(c.settings.agents.timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )

    def _agent_invoker_factory(c: Container):
        from ..agents.http import HttpAgentInvoker

        return HttpAgentInvoker(c.settings.agents, http_client=c.get("http_client"))

    def _directory_factory(c: Container):
        from ..agents.base import InMemoryDirectory

        if c.settings.directory_file is not None:
            return InMemoryDirectory.from_file(c.settings.directory_file)
        return InMemoryDirectory()

    def _supervisor_factory(c: Container):
        from ..core.supervisor import RunSupervisor

        obs = c.settings.observability
        return RunSupervisor(
            directory=c.get("directory"),
            invoker=c.get("agent_invoker"),
            engine=c.settings.engine,
            artifacts_dir=obs.artifacts_directory if obs.save_run_snapshots else None,
        )

    container.register_factory("http_client", _http_client_factory)
    container.register_factory("agent_invoker", _agent_invoker_factory)
    container.register_factory("directory", _directory_factory)
    container.register_factory("supervisor", _supervisor_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
