"""Cooperative cancellation for backward transforms."""

from __future__ import annotations

import threading

from image_transformer.errors import TransformCancelled


class CancellationHandle:
    """One-shot flag checked by workers between bands of work."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransformCancelled("Transform superseded by a newer request")


class CancellationSlot:
    """Holds the current handle of a grid; ``renew`` cancels it and swaps in a fresh one."""

    __slots__ = ("_lock", "_handle")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle = CancellationHandle()

    def renew(self) -> CancellationHandle:
        fresh = CancellationHandle()
        with self._lock:
            previous, self._handle = self._handle, fresh
        previous.cancel()
        return fresh
