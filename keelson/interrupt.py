"""Spinner and ESC listener that run while a provider call is outstanding.

The provider call is never cancelled. The listener only records that the user
pressed ESC; the agent loop checks ``interrupted`` after the call returns and
discards the response if it is set.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from keelson.logging import get_logger

log = get_logger(__name__)

SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")

KeySource = Callable[[], Awaitable[bool]]
FrameRenderer = Callable[[str, str], None]


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it so it is fully torn down."""
    if task is None:
        return
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class InterruptSignal:
    """Async context manager pairing a spinner task with a key-listener task.

    Usage::

        async with InterruptSignal(ui.wait_for_escape, ui.render_spinner, ui.clear_spinner) as signal:
            response = await transport.call(attempt)
        if signal.interrupted:
            ...

    Both tasks are joined on exit, before the caller takes its next step.
    """

    def __init__(
        self,
        wait_for_escape: KeySource | None = None,
        render_frame: FrameRenderer | None = None,
        clear: Callable[[], None] | None = None,
        message: str = "Awaiting response...",
        interval: float = 0.08,
    ):
        self._wait_for_escape = wait_for_escape
        self._render_frame = render_frame
        self._clear = clear
        self.message = message
        self.interval = interval
        self.interrupted = False
        self._running = asyncio.Event()
        self._spinner_task: asyncio.Task[None] | None = None
        self._listener_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running.is_set()

    async def __aenter__(self) -> "InterruptSignal":
        self.interrupted = False
        self._running.set()
        if self._render_frame is not None:
            self._spinner_task = asyncio.create_task(self._spin())
        if self._wait_for_escape is not None:
            self._listener_task = asyncio.create_task(self._listen())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._running.clear()
        await _cancel_task(self._listener_task)
        await _cancel_task(self._spinner_task)
        self._listener_task = None
        self._spinner_task = None
        if self._clear is not None:
            self._clear()

    async def _spin(self) -> None:
        index = 0
        while self._running.is_set():
            frame = SPINNER_FRAMES[index % len(SPINNER_FRAMES)]
            self._render_frame(frame, self.message)
            index += 1
            await asyncio.sleep(self.interval)

    async def _listen(self) -> None:
        pressed = await self._wait_for_escape()
        if pressed and self._running.is_set():
            self.interrupted = True
            log.info("Interrupt requested; waiting for the outstanding response")
            if self._render_frame is not None:
                self.message = "Interrupting after the response arrives..."
