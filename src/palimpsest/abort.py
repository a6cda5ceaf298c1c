"""Cooperative cancellation shared between a request and its pipeline."""

from __future__ import annotations

import asyncio

from palimpsest.errors import RequestAbortedError


class AbortSignal:
    """
    A one-shot abort flag checked between pipeline stages.

    Cancellation is cooperative: nothing is interrupted mid-stage, but once
    ``abort()`` has been called the next ``raise_if_aborted()`` raises
    :class:`RequestAbortedError` and no further side effects are performed.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def abort(self, reason: str | None = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self, stage: str) -> None:
        """Raise if the signal fired; ``stage`` names what was about to run."""
        if self._event.is_set():
            raise RequestAbortedError(stage)
