"""Action Executor — one normalized action in, one ``ActionResult`` out.

``execute`` is total: every failure, from a malformed proposal to a desktop
error, comes back as a failed result. The Turn Loop never needs a try block
around it.
"""

from __future__ import annotations

from typing import Any

from .actions import CLICK_ACTIONS, ActionDescriptor, ActionResult, map_key, normalize_action
from .desktop import Desktop
from .logging import get_logger, tagged

logger = get_logger()


class ActionExecutor:
    """Dispatches actions against a ``Desktop``.

    Args:
        desktop: The desktop primitives.
        width / height: Display size; click coordinates must fall inside.
        max_wait: Upper bound for ``wait`` durations, in seconds.
    """

    def __init__(self, desktop: Desktop, width: int = 1024, height: int = 768, max_wait: float = 30):
        self.desktop = desktop
        self.width = width
        self.height = height
        self.max_wait = max_wait

    async def execute(self, action: ActionDescriptor | Any) -> ActionResult:
        descriptor = normalize_action(action)
        if descriptor.problem:
            return ActionResult(action=descriptor.type, error=descriptor.problem)
        if not descriptor.supported:
            return ActionResult(action=descriptor.type, error=f"unsupported action: {descriptor.type}")
        try:
            return await self._dispatch(descriptor)
        except Exception as e:
            logger.warning(
                f"Action {descriptor.describe()} failed: {e}", extra=tagged("executor")
            )
            return ActionResult(action=descriptor.type, error=str(e) or type(e).__name__)

    async def _dispatch(self, d: ActionDescriptor) -> ActionResult:
        if d.type == "screenshot":
            image = await self.desktop.screenshot()
            return ActionResult(action=d.type, image=image)

        if d.type in CLICK_ACTIONS:
            if d.coordinate is None:
                return ActionResult(action=d.type, error=f"{d.type} requires a coordinate [x, y]")
            x, y = d.coordinate
            if not (0 <= x < self.width and 0 <= y < self.height):
                return ActionResult(
                    action=d.type,
                    error=f"coordinate ({x}, {y}) is outside the {self.width}x{self.height} display",
                )
            await getattr(self.desktop, d.type)(x, y)
            verb = {"left_click": "Clicked", "right_click": "Right-clicked", "double_click": "Double-clicked"}[d.type]
            return ActionResult(action=d.type, output=f"{verb} at ({x}, {y})")

        if d.type == "type":
            if d.text is None:
                return ActionResult(action=d.type, error="type requires text")
            await self.desktop.type(d.text)
            return ActionResult(action=d.type, output=f"Typed: {d.text}")

        if d.type == "key":
            return await self._press_key(d)

        if d.type == "scroll":
            direction = d.scroll_direction or "down"
            amount = d.scroll_amount if d.scroll_amount is not None else 1
            if direction not in ("up", "down", "left", "right"):
                return ActionResult(action=d.type, error=f"invalid scroll direction: {direction}")
            await self.desktop.scroll(direction, amount)
            return ActionResult(action=d.type, output=f"Scrolled {direction} by {amount}")

        # wait
        duration = d.duration if d.duration is not None else 1
        duration = max(0.0, min(float(duration), float(self.max_wait)))
        await self.desktop.wait(duration)
        return ActionResult(action=d.type, output=f"Waited {duration:g} seconds")

    async def _press_key(self, d: ActionDescriptor) -> ActionResult:
        if not d.key:
            return ActionResult(action=d.type, error="key requires a key name")
        mapped = map_key(d.key)
        try:
            await self.desktop.key(mapped)
            return ActionResult(action=d.type, output=f"Pressed key: {mapped}")
        except Exception as e:
            logger.debug(
                f"key({mapped!r}) failed ({e}); retrying through type",
                extra=tagged("executor"),
            )
        await self.desktop.type(mapped)
        return ActionResult(action=d.type, output=f"Typed key: {mapped}", fallback="used type instead")
