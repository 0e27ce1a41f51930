"""System prompts and effective-prompt composition.

``compose_prompt`` builds what a single-shot backend sees each iteration:
the instruction, plus a rendering of the conversation's history when there
is one, with an explicit "don't repeat, continue from here" directive.
"""

from __future__ import annotations

import config

from .session import HistoryEntry, Session


def get_system_prompt(width: int | None = None, height: int | None = None) -> str:
    width = width or config.DISPLAY_WIDTH
    height = height or config.DISPLAY_HEIGHT
    return f"""You are operating an Ubuntu 22.04 LTS desktop through a remote control API.
The screen is {width}x{height} pixels; (0, 0) is the top-left corner.

## Available actions
- screenshot: capture the current screen
- left_click / right_click / double_click: click at [x, y]
- type: type a string of text
- key: press ONE key or shortcut (e.g. "enter", "ctrl+c"); never split a shortcut into separate presses
- scroll: scroll "up", "down", "left" or "right" by an amount of wheel clicks
- wait: pause for a number of seconds

## Rules
- Prefer clicking UI elements over keyboard shortcuts.
- Double-click to open applications and files.
- Propose only actions you can justify from what you know about the screen.
- When the task is complete, propose no further actions and say so."""


def get_structured_prompt(width: int | None = None, height: int | None = None) -> str:
    return get_system_prompt(width, height) + """

## Response format
Respond with a JSON object: {"actions": [...], "reasoning": "..."}.
Each action is an object with an "action" field plus the fields it needs
("coordinate", "text", "scroll_direction", "scroll_amount", "duration").
Return an empty "actions" list when the task is complete."""


def _render_entry(entry: HistoryEntry) -> str:
    payload = entry.payload
    if entry.kind == "narrative":
        return f"[turn {entry.turn}] assistant: {payload.get('text', '')}"
    if entry.kind == "action":
        fields = ", ".join(f"{k}={v}" for k, v in payload.items() if k != "type")
        return f"[turn {entry.turn}] action: {payload.get('type', '?')}" + (f" ({fields})" if fields else "")
    # observation
    if payload.get("error"):
        return f"[turn {entry.turn}] result: {payload.get('action', '?')} failed: {payload['error']}"
    output = payload.get("output") or ("screenshot captured" if payload.get("image") else "ok")
    return f"[turn {entry.turn}] result: {payload.get('action', '?')}: {output}"


def render_history(history, max_entries: int | None = None) -> str:
    """Render history entries as plain text lines, keeping the most recent ``max_entries``."""
    entries = list(history)
    limit = max_entries if max_entries is not None else config.MAX_RENDERED_HISTORY
    omitted = 0
    if limit and len(entries) > limit:
        omitted = len(entries) - limit
        entries = entries[-limit:]
    lines = [_render_entry(e) for e in entries]
    if omitted:
        lines.insert(0, f"({omitted} earlier entries omitted)")
    return "\n".join(lines)


def compose_prompt(session: Session, max_entries: int | None = None) -> str:
    """Instruction plus, for a resumed conversation, the history so far."""
    history = session.history
    if not history:
        return session.instruction
    return (
        f"{session.instruction}\n\n"
        "## Progress so far\n"
        "The following steps have ALREADY been performed. Do not repeat them; "
        "continue from this point.\n"
        f"{render_history(history, max_entries)}"
    )
