"""Periodic and one-shot timer notifications."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol


LOGGER = logging.getLogger(__name__)


class TimerError(Exception):
    """Raised for invalid subscription requests."""


class TimerParameterKind(str, Enum):
    """What a timer subscription refers to."""

    AUTOSCAN = "autoscan"
    ONLINE_CONTENT = "online_content"


@dataclass(frozen=True)
class TimerParameter:
    """Hashable token identifying a subscription.

    Attributes:
        kind: Subsystem the token belongs to.
        id: Autoscan scan ID or online service index.
        mode: Scan mode of the autoscan, if any.
    """

    kind: TimerParameterKind
    id: int
    mode: Optional[str] = None


class TimerSubscriber(Protocol):
    def timer_notify(self, parameter: TimerParameter) -> None: ...


@dataclass
class _Subscription:
    subscriber: TimerSubscriber
    parameter: TimerParameter
    interval: float
    once: bool
    next_fire: float


class Timer:
    """Deliver ``timer_notify`` callbacks from a dedicated thread.

    Subscribers are expected to return quickly; they only enqueue work.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._condition = threading.Condition()
        self._subscriptions: List[_Subscription] = []
        self._shutdown = False
        self._thread: threading.Thread | None = None

    def add_subscriber(
        self,
        subscriber: TimerSubscriber,
        interval: float,
        parameter: TimerParameter,
        once: bool = False,
    ) -> None:
        """Register ``subscriber`` to be notified every ``interval`` seconds.

        Raises:
            TimerError: If the interval is not positive or the pair is already
                subscribed.
        """
        if interval <= 0:
            raise TimerError(f"Invalid timer interval {interval}")
        with self._condition:
            if self._find(subscriber, parameter) is not None:
                raise TimerError(f"Timer subscription for {parameter} already exists")
            self._subscriptions.append(
                _Subscription(subscriber, parameter, interval, once, self._clock() + interval)
            )
            self._condition.notify_all()

    def remove_subscriber(
        self, subscriber: TimerSubscriber, parameter: TimerParameter, dont_fail: bool = False
    ) -> None:
        with self._condition:
            subscription = self._find(subscriber, parameter)
            if subscription is None:
                if dont_fail:
                    return
                raise TimerError(f"No timer subscription for {parameter}")
            self._subscriptions.remove(subscription)
            self._condition.notify_all()

    def has_subscriber(self, subscriber: TimerSubscriber, parameter: TimerParameter) -> bool:
        with self._condition:
            return self._find(subscriber, parameter) is not None

    def run(self) -> None:
        """Start the timer thread."""
        with self._condition:
            if self._thread is not None:
                return
            self._shutdown = False
            self._thread = threading.Thread(target=self._loop, name="TimerThread", daemon=True)
            self._thread.start()

    def shutdown(self) -> None:
        with self._condition:
            self._shutdown = True
            self._condition.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _find(self, subscriber: TimerSubscriber, parameter: TimerParameter) -> _Subscription | None:
        for subscription in self._subscriptions:
            if subscription.subscriber is subscriber and subscription.parameter == parameter:
                return subscription
        return None

    def _loop(self) -> None:
        while True:
            with self._condition:
                if self._shutdown:
                    return
                now = self._clock()
                due = [sub for sub in self._subscriptions if sub.next_fire <= now]
                if not due:
                    upcoming = [sub.next_fire for sub in self._subscriptions]
                    timeout = min(upcoming) - now if upcoming else None
                    self._condition.wait(timeout)
                    continue
                for subscription in due:
                    if subscription.once:
                        self._subscriptions.remove(subscription)
                    else:
                        subscription.next_fire = now + subscription.interval

            for subscription in due:
                try:
                    subscription.subscriber.timer_notify(subscription.parameter)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Timer callback for %s failed", subscription.parameter)


__all__ = ["Timer", "TimerError", "TimerParameter", "TimerParameterKind", "TimerSubscriber"]
