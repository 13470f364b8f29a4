from __future__ import annotations

import threading


class CancellationToken:
    """External cancellation signal polled between steps and agent iterations.

    In-flight tool or LLM calls are never interrupted; cancellation only stops
    further work from being scheduled.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        self._reason = reason
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, returning early (True) once cancelled."""

        return self._event.wait(timeout)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason
