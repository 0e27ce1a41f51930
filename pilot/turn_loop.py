"""Turn Loop — the observe → decide → act orchestrator.

One parameterized loop serves every backend and every iteration policy.
Per invocation:

1. ``start()`` takes the single-flight flag (``SessionBusyError`` if held).
2. Optionally queue on the desktop-wide lock (``desktop.exclusive``).
3. Publish an initial screenshot.
4. Up to ``max_iterations`` times: compose the prompt, ask the backend,
   stop on an empty decision, otherwise dispatch each proposed action in
   order (proposed → result → observation → screenshot for state-changing
   actions), feed the results back, bump the turn counter.
5. Publish ``session-complete``, or exactly one ``error`` if the backend
   failed. The flag is released and the stream closed on every path.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from .actions import ActionDescriptor, ActionResult, normalize_action
from .backends import BackendFactory, DecisionBackend, DecisionContext, validate_backend
from .errors import BackendError, SessionBusyError
from .events import (
    ACTION_PROPOSED,
    ACTION_RESULT,
    ERROR,
    NARRATIVE,
    SCREENSHOT,
    SESSION_COMPLETE,
    TURN_COMPLETE,
    EventStream,
)
from .executor import ActionExecutor
from .logging import get_logger, log_error, reset_session_id, set_session_id, tagged
from .prompts import compose_prompt
from .session import Session

logger = get_logger()


class _TurnProgress:
    """Records and publishes what happens inside one invocation.

    Used by the loop for the actions it dispatches and handed to the native
    backend for the actions its runtime dispatches.
    """

    def __init__(self, loop: "TurnLoop", session: Session, stream: EventStream):
        self._loop = loop
        self._session = session
        self._stream = stream

    async def narrative(self, text: str) -> None:
        self._session.append("narrative", {"text": text})
        self._stream.publish(NARRATIVE, {"turn": self._session.turn_count, "text": text})

    async def action_proposed(self, action: ActionDescriptor) -> None:
        self._session.append("action", action.to_dict())
        self._stream.publish(
            ACTION_PROPOSED, {"turn": self._session.turn_count, "action": action.to_dict()}
        )

    async def action_result(self, action: ActionDescriptor, result: ActionResult) -> None:
        self._session.append("observation", result.to_dict())
        self._stream.publish(
            ACTION_RESULT, {"turn": self._session.turn_count, "result": result.to_dict()}
        )
        if result.image is not None:
            self._stream.publish(SCREENSHOT, {"turn": self._session.turn_count, "image": result.image})
        elif result.ok and action.changes_state:
            if self._loop.screenshot_delay:
                await asyncio.sleep(self._loop.screenshot_delay)
            await self._loop.publish_screenshot(self._session, self._stream)


class TurnLoop:
    """Drives sessions through their invocations.

    Args:
        executor: Dispatches actions against the desktop.
        backend_factory: ``factory(name) -> DecisionBackend``; called once
            per invocation.
        desktop_lock: When given, invocations of different sessions queue on
            it so only one drives the shared desktop at a time.
        action_delay: Seconds between consecutive actions of one decision.
        screenshot_delay: Seconds to wait after a state-changing action before
            the refreshed screenshot.
        llm_timeout: Optional bound, in seconds, for one backend decision.
        max_rendered_history: History entries rendered into a resumed prompt.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        backend_factory: BackendFactory,
        *,
        desktop_lock: Optional[asyncio.Lock] = None,
        action_delay: float = 0,
        screenshot_delay: float = 0.5,
        llm_timeout: Optional[float] = None,
        max_rendered_history: Optional[int] = None,
    ):
        self.executor = executor
        self.backend_factory = backend_factory
        self.desktop_lock = desktop_lock
        self.action_delay = action_delay
        self.screenshot_delay = screenshot_delay
        self.llm_timeout = llm_timeout
        self.max_rendered_history = max_rendered_history
        self._tasks: dict[str, asyncio.Task] = {}
        self._streams: dict[str, EventStream] = {}

    # ---- Public API ----

    def start(
        self,
        session: Session,
        stream: EventStream,
        *,
        backend: Optional[str] = None,
        max_iterations: int = 1,
    ) -> asyncio.Task:
        """Acquire the session and schedule an invocation.

        Raises ``SessionBusyError`` synchronously, leaving the session
        untouched, if another invocation holds it. Raises
        ``UnknownBackendError`` for a bad backend name before acquiring.
        """
        if backend is not None:
            validate_backend(backend)
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        # Check-and-set with no await in between: atomic on the event loop.
        if session.running:
            raise SessionBusyError(session.id)
        session.running = True
        if backend is not None:
            session.backend = backend

        self._streams[session.id] = stream
        task = asyncio.create_task(self._run(session, stream, max_iterations))
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._forget(sid, task))
        return task

    async def run(
        self,
        session: Session,
        stream: EventStream,
        *,
        backend: Optional[str] = None,
        max_iterations: int = 1,
    ) -> str:
        """Start an invocation and wait for it. Returns the completion reason."""
        return await self.start(session, stream, backend=backend, max_iterations=max_iterations)

    def detach(self, session_id: str) -> bool:
        """Detach the consumer of the session's current invocation, if any."""
        stream = self._streams.get(session_id)
        if stream is None:
            return False
        stream.detach()
        return True

    def is_running(self, session_id: str) -> bool:
        return session_id in self._tasks

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def desktop_busy(self) -> bool:
        if self.desktop_lock is not None and self.desktop_lock.locked():
            return True
        return bool(self._tasks)

    async def publish_screenshot(self, session: Session, stream: EventStream) -> None:
        """Capture and publish the screen. Failures are logged, never raised."""
        try:
            image = await self.executor.desktop.screenshot()
        except Exception as e:
            logger.warning(f"Screenshot failed: {e}", extra=tagged("turn_loop"))
            return
        stream.publish(SCREENSHOT, {"turn": session.turn_count, "image": image})

    async def shutdown(self) -> None:
        """Wait for in-flight invocations to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---- Internals ----

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
            self._streams.pop(session_id, None)

    def desktop_guard(self):
        """The desktop-wide lock, or a no-op guard when the desktop is shared."""
        if self.desktop_lock is None:
            return contextlib.nullcontext()
        return self.desktop_lock

    async def _decide(self, backend: DecisionBackend, context: DecisionContext, progress: _TurnProgress):
        try:
            if self.llm_timeout:
                return await asyncio.wait_for(backend.decide(context, progress), self.llm_timeout)
            return await backend.decide(context, progress)
        except asyncio.TimeoutError as e:
            raise BackendError(backend.name, f"decision timed out after {self.llm_timeout}s") from e

    async def _run(self, session: Session, stream: EventStream, max_iterations: int) -> str:
        token = set_session_id(session.id)
        reason = "error"
        try:
            async with self.desktop_guard():
                reason = await self._iterate(session, stream, max_iterations)
            stream.publish(
                SESSION_COMPLETE,
                {
                    "conversation_id": session.id,
                    "turn_count": session.turn_count,
                    "history_length": len(session.history),
                    "reason": reason,
                },
            )
        except BackendError as e:
            log_error(
                "Decision backend failed",
                exc=e,
                context={"conversation": session.id, "backend": session.backend},
            )
            stream.publish(ERROR, {"conversation_id": session.id, "message": str(e), "backend": session.backend})
        except Exception as e:
            log_error(
                "Turn loop failed",
                exc=e,
                context={"conversation": session.id, "backend": session.backend},
            )
            stream.publish(ERROR, {"conversation_id": session.id, "message": f"{type(e).__name__}: {e}"})
        finally:
            session.running = False
            stream.close()
            reset_session_id(token)
        return reason

    async def _iterate(self, session: Session, stream: EventStream, max_iterations: int) -> str:
        try:
            backend = self.backend_factory(session.backend)
        except Exception as e:
            raise BackendError(session.backend, f"could not initialize backend: {e}") from e

        logger.info(
            f"Invocation started (backend={session.backend}, max_iterations={max_iterations}, "
            f"turn={session.turn_count})",
            extra=tagged("turn_loop"),
        )
        await self.publish_screenshot(session, stream)
        progress = _TurnProgress(self, session, stream)

        for iteration in range(max_iterations):
            context = DecisionContext(
                instruction=session.instruction,
                prompt=compose_prompt(session, self.max_rendered_history),
                turn=session.turn_count,
                iteration=iteration,
            )
            decision = await self._decide(backend, context, progress)
            if decision.narrative:
                await progress.narrative(decision.narrative)
            if decision.empty:
                logger.debug("No actions proposed; stopping", extra=tagged("turn_loop"))
                return "no_actions"

            results = []
            for i, proposal in enumerate(decision.actions):
                if i and self.action_delay:
                    await asyncio.sleep(self.action_delay)
                descriptor = normalize_action(proposal.raw)
                await progress.action_proposed(descriptor)
                result = await self.executor.execute(descriptor)
                await progress.action_result(descriptor, result)
                results.append((proposal, result))
            backend.observe(results)

            session.turn_count += 1
            stream.publish(
                TURN_COMPLETE,
                {
                    "turn": session.turn_count,
                    "actions": len(results) + decision.performed,
                    "failed": sum(1 for _, r in results if not r.ok),
                },
            )
        return "iteration_limit"
