from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Generic, Iterator, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised by `put` on a closed channel, and by `get` once it is also drained."""


class ChannelTimeout(Exception):
    """Raised by `get` when no item arrived before the timeout."""


class Channel(Generic[T]):
    """Bounded blocking FIFO between pipeline stages.

    A full channel blocks producers, which is how backpressure travels
    upstream. After `close()` producers get `ChannelClosed` immediately while
    consumers keep receiving whatever is still buffered.
    """

    def __init__(self, maxsize: int = 0, name: str = "channel") -> None:
        self.name = name
        self._maxsize = max(0, maxsize)
        self._items: deque[T] = deque()
        self._closed = False
        self._cond = threading.Condition()

    def put(self, item: T, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ChannelClosed(self.name)
                if self._maxsize == 0 or len(self._items) < self._maxsize:
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise ChannelTimeout(self.name)
                self._cond.wait(remaining)
            self._items.append(item)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> T:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    raise ChannelClosed(self.name)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise ChannelTimeout(self.name)
                self._cond.wait(remaining)
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def qsize(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.get()
            except ChannelClosed:
                return


class StageGroup:
    """Threads of one pipeline stage. The output channels close after the last thread ends."""

    def __init__(
        self,
        name: str,
        targets: list[Callable[[], None]],
        outputs: list[Channel] | None = None,
        on_error: Callable[[str, BaseException], None] | None = None,
    ) -> None:
        if not targets:
            raise ValueError(f"stage {name} needs at least one thread")
        self.name = name
        self._targets = list(targets)
        self._outputs = list(outputs or [])
        self._on_error = on_error
        self._threads: list[threading.Thread] = []
        self._remaining = 0
        self._lock = threading.Lock()
        self._errors: list[BaseException] = []
        self._logger = logging.getLogger("tds.pipeline")

    @classmethod
    def replicate(
        cls,
        name: str,
        target: Callable[[], None],
        count: int,
        outputs: list[Channel] | None = None,
        on_error: Callable[[str, BaseException], None] | None = None,
    ) -> "StageGroup":
        return cls(name, [target] * max(1, count), outputs, on_error)

    def start(self) -> "StageGroup":
        self._remaining = len(self._targets)
        for index, target in enumerate(self._targets):
            thread = threading.Thread(
                target=self._run,
                args=(target,),
                name=f"{self.name}-{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        return self

    def _run(self, target: Callable[[], None]) -> None:
        try:
            target()
        except ChannelClosed:
            self._logger.debug("stage stopped on closed channel stage=%s", self.name)
        except BaseException as exc:
            self._logger.exception("stage thread crashed stage=%s", self.name)
            with self._lock:
                self._errors.append(exc)
            if self._on_error is not None:
                self._on_error(self.name, exc)
        finally:
            with self._lock:
                self._remaining -= 1
                last = self._remaining == 0
            if last:
                for channel in self._outputs:
                    channel.close()

    def join(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not self.alive()

    def alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def errors(self) -> list[BaseException]:
        with self._lock:
            return list(self._errors)
