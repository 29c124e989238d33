"""
Application watch: enqueue an application as soon as its spec changes.

The blocking watch stream runs in a daemon thread and hands keys back to the
event loop. Status writes bump the resource version but not the generation,
so only ADDED events, spec edits and deletions are delivered. The periodic
resync in the work queue remains the fallback for anything missed.
"""
import asyncio
import logging
import random
import threading
from typing import Any, Callable, Dict, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from .kube_client import KubeClient
from .kube_types import AppKey

logger = logging.getLogger(__name__)


class ApplicationWatcher:
    """List-then-watch loop over application resources."""

    def __init__(
        self,
        kube: KubeClient,
        on_change: Callable[[AppKey], None],
        timeout_seconds: int = 300,
        max_backoff_seconds: float = 30.0,
    ):
        """
        Args:
            kube: Client providing ``watch_applications``
            on_change: Called on the event loop with each changed key
            timeout_seconds: Server-side timeout of each watch request
            max_backoff_seconds: Cap for the delay between failed watches
        """
        self.kube = kube
        self.on_change = on_change
        self.timeout_seconds = timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._active: Optional[watch.Watch] = None
        self._thread: Optional[threading.Thread] = None
        self._generations: Dict[AppKey, int] = {}

    async def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self.run, args=(loop,), name="application-watch", daemon=True)
        self._thread.start()
        logger.info("👀 Watching application resources")

    async def stop(self) -> None:
        self.request_stop()
        self._thread = None
        logger.info("Application watch stopped")

    def request_stop(self) -> None:
        """Ask the loop to exit and interrupt the open stream."""
        self._stop.set()
        with self._lock:
            active = self._active
        if active is not None:
            active.stop()

    def run(self, loop: asyncio.AbstractEventLoop) -> None:
        """Watch until stopped, resuming from the last seen resource version."""
        resource_version: Optional[str] = None
        backoff_seconds = 1.0

        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._lock:
                self._active = watcher
            try:
                for event in self.kube.watch_applications(watcher, resource_version, self.timeout_seconds):
                    if self._stop.is_set():
                        break
                    resource_version = self.handle_event(event, loop) or resource_version
                backoff_seconds = 1.0
            except ApiException as e:
                if e.status == 410:
                    # the stored version was compacted away; replay from a fresh list
                    logger.warning("Application watch expired, restarting from a full list")
                    resource_version = None
                    continue
                logger.error(f"Application watch failed: {e.status} {e.reason}")
                self._stop.wait(backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, self.max_backoff_seconds)
            except Exception as e:
                logger.error(f"Unexpected application watch error: {e}", exc_info=True)
                self._stop.wait(backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, self.max_backoff_seconds)
            finally:
                watcher.stop()
                with self._lock:
                    if self._active is watcher:
                        self._active = None

    def handle_event(self, event: Dict[str, Any], loop: asyncio.AbstractEventLoop) -> Optional[str]:
        """
        Deliver one watch event.

        Returns:
            The resource version carried by the event, if any
        """
        obj = event.get("object")
        if not isinstance(obj, dict):
            return None
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return metadata.get("resourceVersion")

        key = AppKey(namespace=metadata.get("namespace", "default"), name=name)
        event_type = event.get("type", "")
        if event_type == "DELETED":
            self._generations.pop(key, None)
            self._deliver(loop, key)
        else:
            generation = metadata.get("generation", 0)
            if self._generations.get(key) != generation:
                self._generations[key] = generation
                logger.debug(f"{event_type} {key} at generation {generation}")
                self._deliver(loop, key)
        return metadata.get("resourceVersion")

    def _deliver(self, loop: asyncio.AbstractEventLoop, key: AppKey) -> None:
        try:
            loop.call_soon_threadsafe(self.on_change, key)
        except RuntimeError:
            # loop closed during shutdown
            self._stop.set()
