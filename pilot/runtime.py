"""Process-wide wiring: registry, desktop, executor, backends and turn loop.

``build_runtime()`` is called once at server start (FastAPI lifespan) and
the resulting object is passed by reference to the routes. Tests build a
``PilotRuntime`` directly with fakes.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

import config

from .backends import BACKENDS, BackendFactory, make_backend_factory
from .desktop import Desktop, OrgoDesktop
from .errors import DesktopBusyError
from .events import EventStream
from .executor import ActionExecutor
from .logging import get_logger, tagged
from .session import Session, SessionRegistry
from .turn_limits import resolve_iterations
from .turn_loop import TurnLoop

logger = get_logger()


class PilotRuntime:
    """Everything a request handler needs, built once."""

    def __init__(
        self,
        desktop: Desktop,
        *,
        backend_factory: Optional[BackendFactory] = None,
        registry: Optional[SessionRegistry] = None,
        exclusive_desktop: bool = True,
        width: int = 1024,
        height: int = 768,
        max_wait: float = 30,
        action_delay: float = 0,
        screenshot_delay: float = 0.5,
        llm_timeout: Optional[float] = None,
        max_rendered_history: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.desktop = desktop
        self.registry = registry or SessionRegistry(clock=clock)
        self.executor = ActionExecutor(desktop, width=width, height=height, max_wait=max_wait)
        self.turn_loop = TurnLoop(
            self.executor,
            backend_factory or make_backend_factory(desktop),
            desktop_lock=asyncio.Lock() if exclusive_desktop else None,
            action_delay=action_delay,
            screenshot_delay=screenshot_delay,
            llm_timeout=llm_timeout,
            max_rendered_history=max_rendered_history,
        )
        self.started_at = time.time()
        self.resetting = False

    @property
    def backends(self) -> tuple[str, ...]:
        return BACKENDS

    def launch(
        self,
        session: Session,
        *,
        backend: Optional[str] = None,
        iteration_policy: str = "single_step",
        max_iterations: Optional[int] = None,
    ) -> EventStream:
        """Resolve the iteration bound and start an invocation on ``session``.

        Returns the stream the caller should drain. Raises
        ``SessionBusyError``, ``DesktopBusyError``, ``UnknownBackendError``
        or ``ValueError`` without touching the session.
        """
        self.ensure_desktop_available()
        bound = resolve_iterations(iteration_policy, backend or session.backend, max_iterations)
        stream = EventStream(session.id)
        self.turn_loop.start(session, stream, backend=backend, max_iterations=bound)
        self.registry.touch(session)
        return stream

    async def screenshot(self) -> str:
        return await self.desktop.screenshot()

    def ensure_desktop_available(self) -> None:
        """Raise ``DesktopBusyError`` while the desktop VM is restarting."""
        if self.resetting:
            raise DesktopBusyError("The desktop is being reset")

    async def reset_desktop(self) -> None:
        """Restart the desktop VM.

        Refused while any invocation holds or waits for the desktop. No
        invocation can start until the restart has finished.
        """
        if self.resetting:
            raise DesktopBusyError("The desktop is already being reset")
        if self.turn_loop.desktop_busy:
            raise DesktopBusyError("The desktop is in use by a running conversation")
        self.resetting = True
        try:
            async with self.turn_loop.desktop_guard():
                logger.info("Restarting desktop", extra=tagged("runtime"))
                await self.desktop.restart()
        finally:
            self.resetting = False

    async def startup(self) -> None:
        await self.registry.start_cleanup_loop()

    async def shutdown(self) -> None:
        await self.registry.stop_cleanup_loop()
        await self.turn_loop.shutdown()


def build_runtime() -> PilotRuntime:
    """Build the runtime from ``config``."""
    registry = SessionRegistry(
        default_backend=config.DEFAULT_BACKEND,
        max_sessions=config.MAX_SESSIONS,
        idle_timeout_seconds=config.SESSION_IDLE_TIMEOUT,
    )
    desktop = OrgoDesktop(project_id=config.ORGO_PROJECT_ID, api_key=config.get_orgo_api_key())
    logger.info(
        f"Runtime ready (default backend={config.DEFAULT_BACKEND}, "
        f"exclusive desktop={config.EXCLUSIVE_DESKTOP})",
        extra=tagged("runtime"),
    )
    return PilotRuntime(
        desktop,
        registry=registry,
        exclusive_desktop=config.EXCLUSIVE_DESKTOP,
        width=config.DISPLAY_WIDTH,
        height=config.DISPLAY_HEIGHT,
        max_wait=config.MAX_WAIT_SECONDS,
        action_delay=config.ACTION_DELAY_MS / 1000,
        screenshot_delay=config.SCREENSHOT_DELAY_MS / 1000,
        llm_timeout=config.LLM_TIMEOUT_SECONDS,
        max_rendered_history=config.MAX_RENDERED_HISTORY,
    )
