"""Config file change fan-out.

- SubscriberRegistry: open channels interested in file changes
- ChangeNotifier: broadcasts ``fileChanged`` to every subscriber, immediately
  (save endpoint) or debounced per filename (file-system triggers)
- ConfigWatcher: at most one watcher per config filename, polling the file's
  stat and feeding changes into the debounced path

Subscriptions are filename-agnostic; clients filter on the filename.
All state here is touched only from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import NotifyDeliveryFailure
from ..events import FileChangedEvent
from .event_stream import Channel

__all__ = [
    "ChangeNotifier",
    "ConfigWatcher",
    "NotifyResult",
    "SubscriberRegistry",
    "DEFAULT_DEBOUNCE",
    "DEFAULT_WATCH_INTERVAL",
]

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.1
DEFAULT_WATCH_INTERVAL = 0.5


class SubscriberRegistry:
    """Token -> channel mapping; a closed channel removes itself."""

    def __init__(self) -> None:
        self._subscribers: dict[str, Channel] = {}

    def add(self, channel: Channel) -> str:
        token = uuid.uuid4().hex
        self._subscribers[token] = channel
        channel.add_close_callback(lambda _channel: self.remove(token))
        logger.debug(f"Subscriber added token={token[:8]}, total: {len(self._subscribers)}")
        return token

    def remove(self, token: str) -> bool:
        if self._subscribers.pop(token, None) is None:
            return False
        logger.debug(f"Subscriber removed token={token[:8]}, remaining: {len(self._subscribers)}")
        return True

    def snapshot(self) -> list[tuple[str, Channel]]:
        return list(self._subscribers.items())

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, token: str) -> bool:
        return token in self._subscribers


@dataclass
class NotifyResult:
    delivered: int = 0
    failures: list[NotifyDeliveryFailure] = field(default_factory=list)


class ChangeNotifier:
    """Broadcasts file-change events to a SubscriberRegistry."""

    def __init__(self, subscribers: SubscriberRegistry, *, debounce: float = DEFAULT_DEBOUNCE) -> None:
        self.subscribers = subscribers
        self.debounce = debounce
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[NotifyResult]] = set()

    async def notify(self, filename: str) -> NotifyResult:
        """Send ``fileChanged`` to every current subscriber.

        A failing subscriber is logged and dropped; the rest still receive
        the event.
        """
        event = FileChangedEvent(filename=filename)
        result = NotifyResult()
        for token, channel in self.subscribers.snapshot():
            cause: BaseException | None = None
            try:
                delivered = await channel.send(event)
            except Exception as e:
                delivered = False
                cause = e
            if delivered:
                result.delivered += 1
                continue
            failure = NotifyDeliveryFailure(token, filename, cause)
            logger.warning(f"Error notifying file change: {failure}")
            result.failures.append(failure)
            self.subscribers.remove(token)

        logger.debug(f"Notified change of {filename} to {result.delivered} subscriber(s)")
        return result

    def notify_debounced(self, filename: str) -> None:
        """Schedule one notify() after the debounce delay, restarting it on every call."""
        pending = self._pending.pop(filename, None)
        if pending is not None:
            pending.cancel()
        loop = asyncio.get_running_loop()
        self._pending[filename] = loop.call_later(self.debounce, self._fire, filename)

    def _fire(self, filename: str) -> None:
        self._pending.pop(filename, None)
        task = asyncio.ensure_future(self.notify(filename))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    async def close(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class ConfigWatcher:
    """Table of per-file watchers feeding ChangeNotifier.notify_debounced.

    A watcher for a filename is created at most once and reused. A watcher
    whose file can no longer be stat'ed is evicted; the next watch() call for
    that filename creates a fresh one.
    """

    def __init__(
        self,
        config_dir: Path,
        notifier: ChangeNotifier,
        *,
        interval: float = DEFAULT_WATCH_INTERVAL,
    ) -> None:
        self.config_dir = config_dir
        self.notifier = notifier
        self.interval = interval
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._signatures: dict[str, tuple[int, int]] = {}

    def _stat(self, filename: str) -> tuple[int, int]:
        st = (self.config_dir / filename).stat()
        return st.st_mtime_ns, st.st_size

    def watch(self, filename: str) -> bool:
        """Start watching ``filename`` unless already watched.

        Returns:
            True if a new watcher was created
        """
        if filename in self._watchers:
            return False
        try:
            self._signatures[filename] = self._stat(filename)
        except OSError as e:
            logger.error(f"Error setting up watcher for {filename}: {e}")
            return False

        self._watchers[filename] = asyncio.create_task(
            self._poll(filename), name=f"watch-{filename}"
        )
        logger.debug(f"Watching config file {filename}")
        return True

    def acknowledge(self, filename: str) -> None:
        """Record the file's current state as already notified."""
        if filename not in self._watchers:
            return
        try:
            self._signatures[filename] = self._stat(filename)
        except OSError as e:
            # the poller will see the same error and evict itself
            logger.debug(f"Cannot stat {filename} after save: {e}")

    async def _poll(self, filename: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    signature = self._stat(filename)
                except OSError as e:
                    logger.warning(f"Error watching file {filename}: {e}")
                    return
                if signature != self._signatures.get(filename):
                    self._signatures[filename] = signature
                    self.notifier.notify_debounced(filename)
        finally:
            if self._watchers.get(filename) is asyncio.current_task():
                del self._watchers[filename]
                self._signatures.pop(filename, None)

    def is_watching(self, filename: str) -> bool:
        return filename in self._watchers

    @property
    def watched(self) -> list[str]:
        return sorted(self._watchers)

    def __len__(self) -> int:
        return len(self._watchers)

    async def close(self) -> None:
        """Stop every watcher."""
        tasks = list(self._watchers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watchers.clear()
        self._signatures.clear()
