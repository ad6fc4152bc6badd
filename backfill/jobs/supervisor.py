from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], None]


class ThreadSupervisor:
    def __init__(self, name_prefix: str):
        self._name_prefix = name_prefix
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def spawn(self, name: str, target: Callable[[], None], on_error: ErrorHandler) -> threading.Thread:
        def _run() -> None:
            try:
                target()
            except Exception as exc:
                on_error(exc)

        thread = threading.Thread(target=_run, name=f"{self._name_prefix}-{name}", daemon=True)
        with self._lock:
            self._threads = [existing for existing in self._threads if existing.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for thread in self._threads if thread.is_alive())

    def join(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                threads = [thread for thread in self._threads if thread.is_alive()]
            current = threading.current_thread()
            threads = [thread for thread in threads if thread is not current]
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
                if deadline is not None and time.monotonic() >= deadline:
                    return not any(thread.is_alive() for thread in threads)
