"""Remote desktop primitives.

``Desktop`` is the async boundary the Action Executor and the native
backend talk to. ``OrgoDesktop`` implements it over the ``orgo`` SDK and is
the **only** module that imports ``orgo``. The SDK is synchronous, so every
call is pushed to the default executor; the event loop keeps serving other
conversations while a click or an agent run is in flight.

One process drives one VM. The ``Computer`` handle is created lazily on
first use and reused for the lifetime of the server.
"""

from __future__ import annotations

import asyncio
import functools
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from .logging import get_logger, tagged

logger = get_logger()

# (event_type, data), called from a worker thread by the agent runtime.
AgentCallback = Callable[[str, Any], None]


class Desktop(ABC):
    """Async desktop primitives. Every method may raise; callers decide."""

    @abstractmethod
    async def screenshot(self) -> str:
        """Return the current screen as a base64-encoded image."""

    @abstractmethod
    async def left_click(self, x: int, y: int) -> None: ...

    @abstractmethod
    async def right_click(self, x: int, y: int) -> None: ...

    @abstractmethod
    async def double_click(self, x: int, y: int) -> None: ...

    @abstractmethod
    async def type(self, text: str) -> None: ...

    @abstractmethod
    async def key(self, name: str) -> None: ...

    @abstractmethod
    async def scroll(self, direction: str, amount: int) -> None: ...

    @abstractmethod
    async def wait(self, seconds: float) -> None: ...

    @abstractmethod
    async def run_agent(
        self,
        instruction: str,
        callback: AgentCallback,
        max_iterations: int,
        max_tokens: int = 4096,
        model: str | None = None,
    ) -> None:
        """Run the provider's own decide-and-dispatch agent.

        ``callback(event_type, data)`` is invoked for each progress event
        (``text``, ``thinking``, ``tool_use``, ``tool_result``, ``error``...),
        possibly from another thread.
        """

    @abstractmethod
    async def restart(self) -> None:
        """Reboot the VM, keeping the same node."""


class OrgoDesktop(Desktop):
    """``Desktop`` backed by an ``orgo.Computer``."""

    def __init__(self, project_id: str | None = None, api_key: str | None = None):
        self._project_id = project_id
        self._api_key = api_key
        self._computer = None
        self._init_lock = threading.Lock()

    def _get_computer(self):
        """Lazily create or reuse the single shared VM handle."""
        if self._computer is None:
            with self._init_lock:
                if self._computer is None:
                    from orgo import Computer

                    kwargs: dict[str, Any] = {}
                    if self._project_id:
                        kwargs["project_id"] = self._project_id
                    if self._api_key:
                        kwargs["api_key"] = self._api_key
                    logger.info(
                        f"Connecting to Orgo computer (project={self._project_id or 'new'})",
                        extra=tagged("desktop"),
                    )
                    self._computer = Computer(**kwargs)
        return self._computer

    async def _call(self, method: str, *args, **kwargs):
        loop = asyncio.get_running_loop()

        def _run():
            return getattr(self._get_computer(), method)(*args, **kwargs)

        return await loop.run_in_executor(None, _run)

    async def screenshot(self) -> str:
        return await self._call("screenshot_base64")

    async def left_click(self, x: int, y: int) -> None:
        await self._call("left_click", x, y)

    async def right_click(self, x: int, y: int) -> None:
        await self._call("right_click", x, y)

    async def double_click(self, x: int, y: int) -> None:
        await self._call("double_click", x, y)

    async def type(self, text: str) -> None:
        await self._call("type", text)

    async def key(self, name: str) -> None:
        await self._call("key", name)

    async def scroll(self, direction: str, amount: int) -> None:
        await self._call("scroll", direction=direction, amount=amount)

    async def wait(self, seconds: float) -> None:
        await self._call("wait", seconds)

    async def run_agent(
        self,
        instruction: str,
        callback: AgentCallback,
        max_iterations: int,
        max_tokens: int = 4096,
        model: str | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {
            "instruction": instruction,
            "callback": callback,
            "max_iterations": max_iterations,
            "max_tokens": max_tokens,
        }
        if model:
            kwargs["model"] = model
        loop = asyncio.get_running_loop()
        computer = await loop.run_in_executor(None, self._get_computer)
        await loop.run_in_executor(None, functools.partial(computer.prompt, **kwargs))

    async def restart(self) -> None:
        logger.info("Restarting shared desktop", extra=tagged("desktop"))
        await self._call("restart")
