from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Subscriber = Callable[[T], None]


class Observable(Generic[T]):
    """Single-writer value holder that notifies subscribers on change.

    ``set`` is the only mutation point. Readers may poll ``value`` from any
    task; subscribers are invoked synchronously by the writer.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: List[Subscriber[T]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for subscriber in list(self._subscribers):
            try:
                subscriber(value)
            except Exception as exc:  # pragma: no cover - subscriber bug
                logger.warning("observable.subscriber_failed", error=str(exc))

    def subscribe(self, subscriber: Subscriber[T]) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def __repr__(self) -> str:
        return f"Observable({self._value!r})"
