"""
MongoDB client handle, process-wide registry and connection monitor.

This module provides:
- MongoClientHandle: a pymongo client and a motor client built from one host
- ClientRegistry: the shared, replaceable handle that repositories bind to
- ConnectionMonitor: a perpetual ping loop that rebuilds the handle on failure
- configure_mongo(): one-time setup for the hosting application
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Callable

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import MongoClient

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class MongoClientHandle:
    """Blocking and non-blocking clients that share one set of connection settings.

    ``recreate()`` builds a fresh handle from the same host and options; it
    does not check that the new clients can reach the server.
    """

    def __init__(
        self,
        host: str,
        *,
        sync_factory: Callable[..., Any] = MongoClient,
        async_factory: Callable[..., Any] = AsyncIOMotorClient,
        **options: Any,
    ):
        self.host = host
        self.options = options
        self._sync_factory = sync_factory
        self._async_factory = async_factory
        self.sync_client = sync_factory(host, **options)
        self.async_client = async_factory(host, **options)

    def get_collection(self, database_name: str, collection_name: str):
        return self.sync_client[database_name][collection_name]

    def get_async_collection(self, database_name: str, collection_name: str):
        return self.async_client[database_name][collection_name]

    async def ping(self) -> None:
        # motor clients are tied to one event loop; the blocking client is not
        await asyncio.to_thread(self.sync_client.admin.command, "ping")

    def recreate(self) -> "MongoClientHandle":
        return MongoClientHandle(
            self.host,
            sync_factory=self._sync_factory,
            async_factory=self._async_factory,
            **self.options,
        )

    def close(self) -> None:
        self.sync_client.close()
        self.async_client.close()

    def __repr__(self) -> str:
        return f"MongoClientHandle({_sanitize_mongodb_url(self.host)!r})"


class ClientRegistry:
    """Holds the current client handle; reads and swaps are lock-guarded.

    Repositories read the handle once, when they are constructed. A swap does
    not migrate repositories that already hold the previous handle.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handle: MongoClientHandle | None = None

    def get(self) -> MongoClientHandle | None:
        with self._lock:
            return self._handle

    def set(self, handle: MongoClientHandle | None) -> MongoClientHandle | None:
        """Install ``handle`` and return the one it replaced."""
        with self._lock:
            previous, self._handle = self._handle, handle
        return previous


_registry = ClientRegistry()


def get_registry() -> ClientRegistry:
    return _registry


def register_client(handle: MongoClientHandle) -> None:
    """Make ``handle`` the process-wide client handle."""
    _registry.set(handle)
    logger.info(f"Registered MongoDB client for {_sanitize_mongodb_url(handle.host)}")


def get_client_handle() -> MongoClientHandle | None:
    return _registry.get()


class MonitorState(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionMonitor:
    """Pings the registered handle forever and replaces it when a ping fails."""

    def __init__(
        self,
        registry: ClientRegistry | None = None,
        ping_timeout: float = 5.0,
        interval: float = 10.0,
    ):
        self.registry = registry or _registry
        self.ping_timeout = ping_timeout
        self.interval = interval
        self.state = MonitorState.CONNECTED
        self.reconnects = 0
        self._stop = threading.Event()
        self._task: asyncio.Task | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, settings: Settings, registry: ClientRegistry | None = None) -> "ConnectionMonitor":
        return cls(
            registry=registry,
            ping_timeout=settings.monitor.ping_timeout_seconds,
            interval=settings.monitor.interval_seconds,
        )

    async def check_once(self) -> MonitorState:
        """Run one probe and, if it fails, one reconnection attempt."""
        handle = self.registry.get()
        if handle is None:
            logger.warning("No MongoDB client registered; skipping health check")
            return self.state

        try:
            await asyncio.wait_for(handle.ping(), timeout=self.ping_timeout)
            if self.state is MonitorState.RECONNECTING:
                logger.info("MongoDB connection is healthy again")
            self.state = MonitorState.CONNECTED
            return self.state
        except Exception as e:
            logger.error(f"MongoDB connection failed: {e!r}")

        self.state = MonitorState.RECONNECTING
        try:
            logger.warning("Re-establishing the MongoDB connection...")
            self.registry.set(handle.recreate())
            self.reconnects += 1
            logger.info("The MongoDB connection was successfully re-established")
        except Exception as e:
            logger.error(f"MongoDB reconnection failure: {e!r}")

        return self.state

    async def run(self) -> None:
        """Probe, sleep, repeat until ``stop()`` is called."""
        logger.info(
            f"Connection monitor started (ping timeout {self.ping_timeout}s, "
            f"interval {self.interval}s)"
        )
        while not self._stop.is_set():
            try:
                await self.check_once()
            except Exception as e:
                logger.exception(f"Connection monitor iteration failed: {e}")
            await asyncio.sleep(self.interval)
        logger.info("Connection monitor stopped")

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        self._stop.clear()
        self._task = asyncio.get_running_loop().create_task(self.run(), name="docrepo-monitor")
        return self._task

    def start_in_thread(self) -> threading.Thread:
        """Run the loop on its own event loop in a daemon thread."""
        self._stop.clear()
        self._thread = threading.Thread(
            target=asyncio.run, args=(self.run(),), name="docrepo-monitor", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def running(self) -> bool:
        if self._task is not None:
            return not self._task.done()
        return self._thread is not None and self._thread.is_alive()


def configure_mongo(
    client: MongoClientHandle | str | None = None,
    settings: Settings | None = None,
) -> ConnectionMonitor | None:
    """
    Register the process-wide client and start the connection monitor.

    Call once at startup, before constructing any repository. ``client`` may
    be a ready handle or a connection URL; by default the URL comes from
    settings. The monitor runs as a task when an event loop is running and
    in a daemon thread otherwise.
    """
    settings = settings or get_settings()
    if isinstance(client, MongoClientHandle):
        handle = client
    else:
        handle = MongoClientHandle(client or settings.mongodb_url, **settings.client_options())

    register_client(handle)

    if not settings.monitor.enabled:
        logger.info("Connection monitor disabled by configuration")
        return None

    monitor = ConnectionMonitor.from_settings(settings)
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        monitor.start_in_thread()
    else:
        monitor.start()
    return monitor


def _sanitize_mongodb_url(url: str) -> str:
    """
    Hide password in MongoDB URL for safe logging.
    """
    if "@" not in url or "://" not in url:
        return url

    protocol, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    username = credentials.split(":", 1)[0]
    return f"{protocol}://{username}:***@{host}"
