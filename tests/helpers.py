"""Shared fakes for the unit tests."""

import asyncio
from typing import List


class FakeClock:
    """Monotonic clock advanced only by ``sleep`` or ``advance``."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Yield so other tasks run, as a real sleep would
        await asyncio.sleep(0)


class HttpStatusError(Exception):
    """Provider error carrying an HTTP status, like most SDK exceptions."""

    def __init__(self, status_code: int, message: str = "", headers=None):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.headers = headers or {}


class TransportError(Exception):
    """Low-level error carrying a transport code string."""

    def __init__(self, code: str, message: str = "socket failure"):
        super().__init__(message)
        self.code = code


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)
