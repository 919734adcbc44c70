"""Cooperative cancellation shared by the controller and the model call."""

from __future__ import annotations

import asyncio

from ..errors import TurnCancelledError

__all__ = ["CancellationToken"]


class CancellationToken:
    """One-shot abort signal; once cancelled it stays cancelled."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError()

    async def wait(self) -> None:
        await self._event.wait()
