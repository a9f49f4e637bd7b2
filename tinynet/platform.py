"""Interrupt dispatching thread and sleep/wakeup scheduling contexts."""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

IRQ_SHARED = 0x0001


class Irq(enum.IntEnum):
    """Well-known interrupt numbers."""

    SHUTDOWN = 1
    SOFTIRQ = 10
    EVENT = 12
    TIMER = 14
    BASE = 35


class IrqConflictError(Exception):
    """An IRQ is already registered and cannot be shared."""


class Interrupted(InterruptedError):
    """A sleep was interrupted."""


@dataclass
class _IrqEntry:
    irq: int
    handler: Callable[[int, Any], Any]
    flags: int
    name: str
    dev: Any


class Interrupts:
    """Runs a background thread that dispatches raised interrupts and timer ticks."""

    TICK = 0.001

    def __init__(self, softirq_handler, event_handler, timer_handler):
        self._softirq_handler = softirq_handler
        self._event_handler = event_handler
        self._timer_handler = timer_handler
        self._entries: list[_IrqEntry] = []
        self._lock = threading.Lock()
        self._queue: queue.SimpleQueue[int] = queue.SimpleQueue()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def request_irq(self, irq, handler, flags=0, name="", dev=None):
        """Register ``handler(irq, dev)`` for ``irq``; sharing requires IRQ_SHARED on both."""
        with self._lock:
            for entry in self._entries:
                if entry.irq == irq and (entry.flags != IRQ_SHARED or flags != IRQ_SHARED):
                    raise IrqConflictError(f"conflicts with already registered IRQ {irq}")
            self._entries.insert(0, _IrqEntry(int(irq), handler, flags, name[:15], dev))
        logger.debug("registered: irq=%d, name=%s", irq, name)

    def raise_irq(self, irq):
        """Queue ``irq`` for dispatch on the interrupt thread."""
        self._queue.put(int(irq))

    def run(self):
        """Start the interrupt thread and wait until it is running."""
        if self.running:
            raise RuntimeError("interrupt thread already running")
        started = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, args=(started,), name="intr", daemon=True
        )
        self._thread.start()
        started.wait()

    def shutdown(self):
        """Stop the interrupt thread if it was started."""
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put(int(Irq.SHUTDOWN))
        thread.join()
        self._thread = None

    def _loop(self, started: threading.Event):
        logger.debug("start...")
        started.set()
        deadline = time.monotonic() + self.TICK
        while True:
            timeout = deadline - time.monotonic()
            if timeout <= 0:
                self._dispatch(Irq.TIMER)
                deadline = time.monotonic() + self.TICK
                continue
            try:
                irq = self._queue.get(timeout=timeout)
            except queue.Empty:
                continue
            if irq == Irq.SHUTDOWN:
                break
            self._dispatch(irq)
        logger.debug("terminated")

    def _dispatch(self, irq: int):
        try:
            if irq == Irq.SOFTIRQ:
                self._softirq_handler()
            elif irq == Irq.EVENT:
                self._event_handler()
            elif irq == Irq.TIMER:
                self._timer_handler()
            else:
                with self._lock:
                    entries = [entry for entry in self._entries if entry.irq == irq]
                for entry in entries:
                    logger.debug("irq=%d, name=%s", entry.irq, entry.name)
                    entry.handler(entry.irq, entry.dev)
        except Exception:
            logger.exception("interrupt handler failed, irq=%d", irq)


class SchedContext:
    """A wait queue whose sleepers can be woken or interrupted."""

    def __init__(self):
        self._guard = threading.Lock()
        self._waiters: list[threading.Event] = []
        self._interrupted = False
        self._wc = 0

    @property
    def waiting(self) -> int:
        """Number of threads currently sleeping."""
        return self._wc

    def sleep(self, lock, timeout=None) -> bool:
        """Release ``lock`` and wait; return False on timeout, raise Interrupted if interrupted.

        ``lock`` must be held by the caller and is held again on return.
        """
        if self._interrupted:
            raise Interrupted("interrupted")
        waiter = threading.Event()
        with self._guard:
            self._waiters.append(waiter)
            self._wc += 1
        lock.release()
        try:
            woken = waiter.wait(timeout)
        finally:
            lock.acquire()
            with self._guard:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                self._wc -= 1
        if self._interrupted:
            if not self._wc:
                self._interrupted = False
            raise Interrupted("interrupted")
        return woken

    def wakeup(self):
        """Wake every sleeper."""
        with self._guard:
            waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.set()

    def interrupt(self):
        """Wake every sleeper with Interrupted."""
        self._interrupted = True
        self.wakeup()