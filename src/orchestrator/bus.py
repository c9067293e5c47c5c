"""Event bus for inter-component communication.

The registry, the conversation store and the gateway never hold references
to each other's observers; every state change is published here and fanned
out to subscribers (UI, loggers, analytics).
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from shared.errors import Timeout
from shared.logging import get_logger
from shared.models import Event

logger = get_logger(__name__)

Handler = Callable[[Event], Union[None, Awaitable[None]]]
EventKey = Union[str, Enum]

WILDCARD = "*"


def _key(name: EventKey) -> str:
    return name.value if isinstance(name, Enum) else name


@dataclass(eq=False)
class _Subscription:
    handler: Handler
    owner: Optional[str] = None
    once: bool = False


class EventBus:
    """
    Synchronous publish/subscribe hub.

    - publish() is a no-op until start() is called
    - a failing subscriber never prevents other subscribers from running
    - history is bounded, oldest events are dropped first
    """

    def __init__(self, max_history: int = 1000, enable_logging: bool = False) -> None:
        self.max_history = max_history
        self.enable_logging = enable_logging

        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._history: deque[Event] = deque(maxlen=max_history)
        self._started = False
        self._pending: set[asyncio.Task] = set()

        self.published_count = 0
        self.dropped_count = 0
        self.handler_errors = 0

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        self._started = True
        logger.info("Event bus started")

    def stop(self) -> None:
        self._started = False
        logger.info("Event bus stopped", published=self.published_count)

    def publish(self, name: EventKey, data: Optional[dict[str, Any]] = None) -> Optional[Event]:
        """
        Publish an event to all current subscribers.

        Args:
            name: Event name
            data: Event payload

        Returns:
            The published event, or None when the bus is not started
        """
        event_name = _key(name)
        if not self._started:
            self.dropped_count += 1
            logger.warning("Cannot publish before bus start", event_name=event_name)
            return None

        event = Event(name=event_name, data=dict(data or {}))
        self._history.append(event)
        self.published_count += 1

        if self.enable_logging:
            logger.debug("Publishing event", event_name=event_name, data=event.data)

        targets = list(self._subscriptions.get(event_name, ()))
        if event_name != WILDCARD:
            targets += self._subscriptions.get(WILDCARD, ())

        for subscription in targets:
            if subscription.once:
                self._remove(event_name, subscription) or self._remove(WILDCARD, subscription)
            self._dispatch(subscription, event)

        return event

    def _dispatch(self, subscription: _Subscription, event: Event) -> None:
        try:
            result = subscription.handler(event)
        except Exception as e:
            self.handler_errors += 1
            logger.error(
                "Event subscriber failed",
                event_name=event.name,
                owner=subscription.owner,
                error=str(e),
                exc_info=True
            )
            return

        if inspect.isawaitable(result):
            self._schedule(result, event, subscription.owner)

    def _schedule(self, awaitable: Awaitable[None], event: Event, owner: Optional[str]) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            # No running loop; the coroutine can never run
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("Async subscriber skipped, no running loop", event_name=event.name, owner=owner)
            return

        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                self.handler_errors += 1
                logger.error("Async event subscriber failed", event_name=event.name, owner=owner, error=str(error))

        task.add_done_callback(_done)

    def subscribe(
        self,
        name: EventKey,
        handler: Handler,
        owner: Optional[str] = None
    ) -> Callable[[], None]:
        """
        Subscribe to an event.

        Args:
            name: Event name, or "*" for every event
            handler: Called with the Event; may return an awaitable
            owner: Optional module tag for unsubscribe_module()

        Returns:
            Function that removes this subscription
        """
        return self._add(_key(name), _Subscription(handler=handler, owner=owner))

    def subscribe_once(
        self,
        name: EventKey,
        handler: Handler,
        owner: Optional[str] = None
    ) -> Callable[[], None]:
        """Subscribe to the next occurrence of an event only."""
        return self._add(_key(name), _Subscription(handler=handler, owner=owner, once=True))

    def subscribe_many(
        self,
        names: list[EventKey],
        handler: Handler,
        owner: Optional[str] = None
    ) -> Callable[[], None]:
        """Subscribe one handler to several events at once."""
        unsubscribers = [self.subscribe(name, handler, owner) for name in names]

        def unsubscribe_all() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unsubscribe_all

    def _add(self, name: str, subscription: _Subscription) -> Callable[[], None]:
        self._subscriptions.setdefault(name, []).append(subscription)

        if self.enable_logging:
            logger.debug("Subscribed to event", event_name=name, owner=subscription.owner)

        return lambda: self._remove(name, subscription)

    def _remove(self, name: str, subscription: _Subscription) -> bool:
        subscriptions = self._subscriptions.get(name)
        if not subscriptions or subscription not in subscriptions:
            return False
        subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[name]
        return True

    def unsubscribe(self, name: EventKey, handler: Handler) -> bool:
        """Remove the first subscription of handler to name."""
        event_name = _key(name)
        for subscription in list(self._subscriptions.get(event_name, ())):
            if subscription.handler == handler:
                return self._remove(event_name, subscription)
        return False

    def unsubscribe_module(self, owner: str) -> int:
        """
        Remove every subscription registered with the given owner tag.

        Returns:
            Number of subscriptions removed
        """
        removed = 0
        for name in list(self._subscriptions):
            for subscription in list(self._subscriptions.get(name, ())):
                if subscription.owner == owner and self._remove(name, subscription):
                    removed += 1

        if removed:
            logger.info("Unsubscribed module", owner=owner, count=removed)
        return removed

    def listener_count(self, name: EventKey) -> int:
        return len(self._subscriptions.get(_key(name), ()))

    async def wait_for(self, name: EventKey, timeout_ms: float = 5000) -> Event:
        """
        Wait for the next publish of an event.

        The internal listener is removed on success, on timeout and on
        cancellation.

        Raises:
            Timeout: If no matching event is published within timeout_ms
        """
        event_name = _key(name)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Event] = loop.create_future()

        def _on_event(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        def _expire() -> None:
            if not future.done():
                future.set_exception(
                    Timeout(f"Timeout waiting for event: {event_name}", event=event_name, timeout_ms=timeout_ms)
                )

        unsubscribe = self.subscribe(event_name, _on_event)
        timer = loop.call_later(timeout_ms / 1000, _expire)
        try:
            return await future
        finally:
            timer.cancel()
            unsubscribe()

    async def publish_and_wait(
        self,
        name: EventKey,
        data: Optional[dict[str, Any]] = None,
        response_name: Optional[EventKey] = None,
        timeout_ms: float = 5000
    ) -> Event:
        """Publish an event and wait for its response event (<name>-response by default)."""
        response = _key(response_name) if response_name else f"{_key(name)}-response"
        waiter = asyncio.ensure_future(self.wait_for(response, timeout_ms))
        # Let the waiter register its listener before publishing
        await asyncio.sleep(0)
        self.publish(name, data)
        return await waiter

    def namespace(self, prefix: str) -> "EventNamespace":
        return EventNamespace(self, prefix)

    def history(self, name: Optional[EventKey] = None, limit: int = 50) -> list[Event]:
        """Get recent events, optionally filtered by name."""
        events = list(self._history)
        if name is not None:
            event_name = _key(name)
            events = [e for e in events if e.name == event_name]
        return events[-limit:] if limit else events

    def clear_history(self) -> None:
        self._history.clear()
        logger.info("Event history cleared")

    def get_stats(self) -> dict[str, Any]:
        """Get subscription and traffic statistics."""
        owners: dict[str, list[str]] = {}
        for name, subscriptions in self._subscriptions.items():
            for subscription in subscriptions:
                if subscription.owner:
                    owners.setdefault(subscription.owner, []).append(name)

        return {
            "started": self._started,
            "history_size": len(self._history),
            "published": self.published_count,
            "dropped": self.dropped_count,
            "handler_errors": self.handler_errors,
            "listener_counts": {name: len(subs) for name, subs in self._subscriptions.items()},
            "module_subscriptions": owners,
        }


class EventNamespace:
    """Publish and subscribe under a "<prefix>:" event name prefix."""

    def __init__(self, bus: EventBus, prefix: str) -> None:
        self.bus = bus
        self.prefix = prefix

    def _name(self, name: EventKey) -> str:
        return f"{self.prefix}:{_key(name)}"

    def publish(self, name: EventKey, data: Optional[dict[str, Any]] = None) -> Optional[Event]:
        return self.bus.publish(self._name(name), data)

    def subscribe(self, name: EventKey, handler: Handler, owner: Optional[str] = None) -> Callable[[], None]:
        return self.bus.subscribe(self._name(name), handler, owner)

    def unsubscribe(self, name: EventKey, handler: Handler) -> bool:
        return self.bus.unsubscribe(self._name(name), handler)
