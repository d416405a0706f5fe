"""Topic-based publish/subscribe on blinker signals.

Every publisher (a change notifier, a replication, a sync session) owns an
``EventEmitter``, i.e. its own blinker ``Namespace`` with one named signal
per topic, so receivers of two stores or two sessions never mix.
"""

import inspect
from collections.abc import Callable
from typing import Any

from blinker import Namespace
from loguru import logger

Handler = Callable[..., Any]
Receiver = Callable[..., Any]


class EventEmitter:
    """Multi-subscriber broadcaster keyed by topic name.

    Handlers may be plain functions or coroutine functions and receive the
    emitted arguments positionally. Each handler is connected through an
    async receiver that awaits it and logs its failure, so one failing
    handler does not prevent delivery to the others. Delivery order between
    handlers of one topic is not defined.

    Example:
        emitter = EventEmitter()
        emitter.on("card", lambda change: print(change.id))
        await emitter.emit("card", change)
    """

    def __init__(self) -> None:
        self.signals = Namespace()
        self._receivers: dict[str, list[tuple[Handler, Receiver]]] = {}

    def on(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for a topic.

        Returns:
            A callable that unregisters the handler.
        """

        async def receiver(_sender: Any, *, args: tuple[Any, ...] = ()) -> None:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed", topic=topic)

        # Strong reference: the wrapper has no other owner
        self.signals.signal(topic).connect(receiver, weak=False)
        self._receivers.setdefault(topic, []).append((handler, receiver))
        return lambda: self._disconnect(topic, receiver)

    def off(self, topic: str, handler: Handler) -> None:
        """Unregister a handler; unknown handlers are ignored."""
        for registered, receiver in self._receivers.get(topic, ()):
            if registered == handler:
                self._disconnect(topic, receiver)
                return

    def _disconnect(self, topic: str, receiver: Receiver) -> None:
        pairs = self._receivers.get(topic, [])
        for index, (_, connected) in enumerate(pairs):
            if connected is receiver:
                del pairs[index]
                self.signals.signal(topic).disconnect(receiver)
                return

    def clear(self) -> None:
        """Drop every handler on every topic."""
        for topic, pairs in self._receivers.items():
            signal = self.signals.signal(topic)
            for _, receiver in pairs:
                signal.disconnect(receiver)
        self._receivers.clear()

    def listener_count(self, topic: str) -> int:
        signal = self.signals.get(topic)
        return len(signal.receivers) if signal is not None else 0

    async def emit(self, topic: str, *args: Any) -> None:
        """Deliver an event to every handler of the topic."""
        signal = self.signals.get(topic)
        if signal is None or not signal.receivers:
            return
        await signal.send_async(self, args=args)
