from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable


class StopToken:
    """Cooperative stop flag checked by workers between stages."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.signal: str | None = None

    def request(self, signal_name: str = "manual") -> None:
        if self.signal is None:
            self.signal = signal_name
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def install_signal_handlers(
    token: StopToken, on_signal: Callable[[str], None] | None = None
) -> Callable[[], None]:
    """Route SIGINT/SIGTERM into ``token``. Returns a function that removes the handlers."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _handle(sig: signal.Signals) -> None:
        first = token.signal is None
        token.request(sig.name)
        if first and on_signal is not None:
            on_signal(sig.name)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle, sig)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)

    def _remove() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return _remove
