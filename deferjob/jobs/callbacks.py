from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterator

if TYPE_CHECKING:
    from deferjob.jobs.types import Job

logger = logging.getLogger(__name__)

JobCallback = Callable[["Job"], object]


class CallbackRegistry:
    """Ordered, duplicate-free collection of completion callbacks.

    Membership is decided by equality, so two bound methods of the same object
    count as one entry.
    """

    __slots__ = ("_items",)

    def __init__(self, callbacks: list[JobCallback] | None = None):
        self._items: list[JobCallback] = []
        for callback in callbacks or []:
            self.add(callback, append=True)

    def __iter__(self) -> Iterator[JobCallback]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, callback: object) -> bool:
        return callback in self._items

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CallbackRegistry):
            return NotImplemented
        return self._items == other._items

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"CallbackRegistry({self._items!r})"

    def copy(self) -> "CallbackRegistry":
        return CallbackRegistry(self._items)

    def add(self, callback: JobCallback, *, append: bool = False) -> bool:
        if not callable(callback):
            raise TypeError(f"Callback must be callable, got {type(callback).__name__}")
        if callback in self._items:
            return False
        if append:
            self._items.append(callback)
        else:
            self._items.insert(0, callback)
        return True

    def remove(self, callback: JobCallback) -> bool:
        try:
            self._items.remove(callback)
        except ValueError:
            return False
        return True

    def run_all(self, job: Job) -> None:
        for callback in self:
            logger.debug("job %s: running callback %r", job.id, callback)
            callback(job)


def add_callback(job: Job, callback: JobCallback, append: bool = False) -> Job:
    job.callbacks.add(callback, append=append)
    return job


def remove_callback(job: Job, callback: JobCallback) -> Job:
    job.callbacks.remove(callback)
    return job


def run_callbacks(job: Job) -> None:
    job.callbacks.run_all(job)
