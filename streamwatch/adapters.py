import logging
from typing import Awaitable, Callable, Iterator, Optional, Protocol, runtime_checkable

from .config import ServerConfig, Settings
from .models import Activity

logger = logging.getLogger(__name__)

LiveEventHandler = Callable[[], Awaitable[None]]


@runtime_checkable
class MediaAdapter(Protocol):
    """Translates one media server's API into normalized activities."""

    name: str
    server_type: str

    async def get_active_streams(self) -> list[Activity]: ...

    async def test_connection(self) -> dict: ...

    async def get_item_info(self, media_id: str) -> dict: ...

    async def search_by_title(self, title: str, media_type: Optional[str] = None) -> Optional[dict]: ...

    async def close(self) -> None: ...


@runtime_checkable
class LiveEventSource(Protocol):
    """Optional push capability. Events are only a hint to poll again."""

    async def subscribe_live_events(self, handler: LiveEventHandler) -> None: ...

    async def unsubscribe(self) -> None: ...


class AdapterRegistry:
    """The set of adapters built at startup, shared by the monitor and maintenance jobs."""

    def __init__(self, adapters: Optional[list[MediaAdapter]] = None):
        self._adapters: list[MediaAdapter] = list(adapters or [])

    def __iter__(self) -> Iterator[MediaAdapter]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    def add(self, adapter: MediaAdapter) -> None:
        self._adapters.append(adapter)

    def by_type(self, server_type: str) -> list[MediaAdapter]:
        return [adapter for adapter in self._adapters if adapter.server_type == server_type]

    def live_sources(self) -> list[MediaAdapter]:
        return [adapter for adapter in self._adapters if isinstance(adapter, LiveEventSource)]

    def server_types(self) -> set[str]:
        return {adapter.server_type for adapter in self._adapters}

    async def test_connections(self) -> dict[str, dict]:
        """Check every server once; failures are logged, never raised."""
        results = {}
        for adapter in self._adapters:
            try:
                result = await adapter.test_connection()
            except Exception as e:
                result = {"success": False, "error": str(e)}
            if result.get("success"):
                logger.info(f"{adapter.name}: {result.get('message', 'connected')}")
            else:
                logger.warning(f"{adapter.name} is unreachable: {result.get('error')}")
            results[adapter.name] = result
        return results

    async def close(self) -> None:
        for adapter in self._adapters:
            if isinstance(adapter, LiveEventSource):
                try:
                    await adapter.unsubscribe()
                except Exception as e:
                    logger.warning(f"Error unsubscribing {adapter.name}: {e}")
            await adapter.close()


def build_adapter(server: ServerConfig, config: Settings) -> MediaAdapter:
    """Create the adapter for a configured server."""
    server_type = server.type.lower()
    if server_type in ("jellyfin", "emby"):
        from .jellyfin_client import JellyfinAdapter

        return JellyfinAdapter(server.name, server.url, server.api_key, server_type=server_type)
    if server_type == "plex":
        from .plex_client import PlexAdapter

        return PlexAdapter(server.name, server.url, server.api_key)
    if server_type == "audiobookshelf":
        from .audiobookshelf_client import AudiobookshelfAdapter

        return AudiobookshelfAdapter(
            server.name,
            server.url,
            server.api_key,
            inactivity_threshold_seconds=config.liveness_inactivity_seconds,
        )
    if server_type == "sappho":
        from .sappho_client import SapphoAdapter

        return SapphoAdapter(server.name, server.url, server.api_key)
    raise ValueError(f"Unsupported server type: {server.type}")


def build_registry(config: Settings) -> AdapterRegistry:
    """Build adapters for every enabled server; a broken entry is logged and skipped."""
    registry = AdapterRegistry()
    for server in config.configured_servers:
        try:
            registry.add(build_adapter(server, config))
            logger.info(f"{server.name} ({server.type}) initialized")
        except Exception as e:
            logger.error(f"Failed to initialize {server.name}: {e}")
    if not len(registry):
        logger.warning("No media servers configured")
    return registry
