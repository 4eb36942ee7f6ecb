"""
Observer registration for agent and coordinator events.

Each component owns one EventChannel. Subscribers get a Subscription handle
back and are responsible for cancelling it, which keeps listener ownership
explicit at shutdown.

Listener failures are logged and never reach the emitter.
"""
import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from route_agents.utils.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[Any], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by EventChannel.subscribe()."""

    def __init__(self, channel: "EventChannel", event: str, listener: Listener):
        self.channel = channel
        self.event = event
        self.listener = listener
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.channel._remove(self)
            self.active = False


class EventChannel:
    def __init__(self, name: str):
        self.name = name
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._pending: Set["asyncio.Task[None]"] = set()

    def subscribe(self, event: str, listener: Listener) -> Subscription:
        subscription = Subscription(self, event, listener)
        self._subscriptions[event].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        listeners = self._subscriptions.get(subscription.event, [])
        if subscription in listeners:
            listeners.remove(subscription)
        if not listeners:
            self._subscriptions.pop(subscription.event, None)

    def emit(self, event: str, payload: Any = None) -> int:
        """
        Deliver payload to every listener of event.

        Sync listeners run inline; coroutine listeners are scheduled as tasks
        tracked by the channel (see drain()).

        Returns:
            Number of listeners notified
        """
        subscriptions = list(self._subscriptions.get(event, ()))
        for subscription in subscriptions:
            try:
                result = subscription.listener(payload)
            except Exception as e:
                logger.error("event_listener_failed", error=e, channel=self.name, event=event)
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._make_done_callback(event))

        return len(subscriptions)

    def _make_done_callback(self, event: str) -> Callable[["asyncio.Task[None]"], None]:
        def _done(task: "asyncio.Task[None]") -> None:
            self._pending.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.error("event_listener_failed", error=error, channel=self.name, event=event)

        return _done

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._subscriptions.get(event, ()))
        return sum(len(listeners) for listeners in self._subscriptions.values())

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for async listeners scheduled so far."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)

    def clear(self) -> None:
        """Drop every subscription and cancel outstanding async listeners."""
        for listeners in list(self._subscriptions.values()):
            for subscription in listeners:
                subscription.active = False
        self._subscriptions.clear()
        for task in list(self._pending):
            task.cancel()
