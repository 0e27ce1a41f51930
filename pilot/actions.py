"""Action descriptors, action results and the untrusted-input normalizer.

Everything a Decision Backend proposes passes through :func:`normalize_action`
exactly once, on its way to the Action Executor. Model output is untrusted:
field names vary between providers (``coords`` vs ``coordinate``), numbers
arrive as strings, and the action type may be outside the closed set. The
normalizer never raises; anything it can't make sense of is carried on the
descriptor as ``problem`` and turned into a failed result by the executor.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


ACTION_TYPES = (
    "screenshot",
    "left_click",
    "right_click",
    "double_click",
    "type",
    "key",
    "scroll",
    "wait",
)

CLICK_ACTIONS = frozenset({"left_click", "right_click", "double_click"})

# Actions after which the live view must be refreshed.
STATE_CHANGING_ACTIONS = frozenset(ACTION_TYPES) - {"screenshot", "wait"}

SCROLL_DIRECTIONS = ("up", "down", "left", "right")

# ---------------------------------------------------------------------------
# Field alias table; the only place where provider spellings are reconciled.
# Keys are the names models emit, values are ActionDescriptor fields.
# ---------------------------------------------------------------------------

FIELD_ALIASES: dict[str, str] = {
    "coordinate": "coordinate",
    "coordinates": "coordinate",
    "coords": "coordinate",
    "position": "coordinate",
    "text": "text",
    "key": "key",
    "keys": "key",
    "scroll_direction": "scroll_direction",
    "direction": "scroll_direction",
    "scroll_amount": "scroll_amount",
    "amount": "scroll_amount",
    "duration": "duration",
    "seconds": "duration",
}

# Human-readable key names → tokens the desktop API expects.
KEY_MAP: dict[str, str] = {
    "enter": "Enter",
    "return": "Enter",
    "space": " ",
    "tab": "Tab",
    "escape": "Escape",
    "esc": "Escape",
    "backspace": "Backspace",
    "delete": "Delete",
    "arrowup": "ArrowUp",
    "arrowdown": "ArrowDown",
    "arrowleft": "ArrowLeft",
    "arrowright": "ArrowRight",
    "up": "ArrowUp",
    "down": "ArrowDown",
    "left": "ArrowLeft",
    "right": "ArrowRight",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "ctrl": "Ctrl",
    "ctrl+c": "Ctrl+c",
    "ctrl+v": "Ctrl+v",
    "ctrl+x": "Ctrl+x",
    "ctrl+z": "Ctrl+z",
    "ctrl+w": "Ctrl+w",
    "ctrl+t": "Ctrl+t",
    "ctrl+n": "Ctrl+n",
    "ctrl+m": "Ctrl+m",
    "ctrl+tab": "Ctrl+Tab",
    "ctrl+shift+tab": "Ctrl+Shift+Tab",
}

_MODIFIERS = {
    "ctrl": "Ctrl",
    "control": "Ctrl",
    "shift": "Shift",
    "alt": "Alt",
    "super": "Super",
    "meta": "Super",
}


def map_key(name: str) -> str:
    """Map a human-readable key name to the desktop API token.

    Exact table hits win. Unlisted chords (``ctrl+shift+t``) get their
    modifiers canonicalized and the final key mapped on its own; anything
    else passes through unchanged.
    """
    cleaned = name.strip()
    hit = KEY_MAP.get(cleaned.lower())
    if hit is not None:
        return hit
    if "+" in cleaned and len(cleaned) > 1:
        *mods, last = cleaned.split("+")
        if all(m.strip().lower() in _MODIFIERS for m in mods):
            parts = [_MODIFIERS[m.strip().lower()] for m in mods]
            tail = KEY_MAP.get(last.strip().lower(), last.strip())
            return "+".join(parts + [tail])
    return cleaned


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActionDescriptor:
    """One normalized desktop action.

    Attributes:
        type: Action name. Usually one of ``ACTION_TYPES``; anything else is
            preserved so the executor can report it as unsupported.
        coordinate: ``(x, y)`` in desktop pixels, for clicks.
        text: Text to type.
        key: Key name for ``key`` actions (already mapped via ``KEY_MAP``
            only at dispatch time; the descriptor keeps the model's name).
        scroll_direction / scroll_amount: For ``scroll``.
        duration: Seconds, for ``wait``.
        problem: Set when the raw input couldn't be normalized; the executor
            fails the action with this message instead of dispatching it.
    """
    type: str
    coordinate: tuple[int, int] | None = None
    text: str | None = None
    key: str | None = None
    scroll_direction: str | None = None
    scroll_amount: int | None = None
    duration: float | None = None
    problem: str | None = None

    @property
    def supported(self) -> bool:
        return self.type in ACTION_TYPES

    @property
    def changes_state(self) -> bool:
        return self.type in STATE_CHANGING_ACTIONS

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": self.type}
        if self.coordinate is not None:
            data["coordinate"] = list(self.coordinate)
        for name in ("text", "key", "scroll_direction", "scroll_amount", "duration", "problem"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    def describe(self) -> str:
        """Short human-readable rendering used in prompts and logs."""
        if self.type in CLICK_ACTIONS and self.coordinate:
            return f"{self.type} at ({self.coordinate[0]}, {self.coordinate[1]})"
        if self.type == "type" and self.text is not None:
            return f"type {self.text!r}"
        if self.type == "key" and self.key:
            return f"key {self.key}"
        if self.type == "scroll":
            return f"scroll {self.scroll_direction or 'down'} by {self.scroll_amount or 1}"
        if self.type == "wait":
            return f"wait {self.duration or 1}s"
        return self.type


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one dispatched action.

    Exactly one of ``output``/``image`` (success) or ``error`` (failure) is
    meaningful. ``image`` holds a base64 screenshot.
    """
    action: str
    output: str | None = None
    image: str | None = None
    error: str | None = None
    fallback: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self, include_image: bool = False) -> dict:
        data: dict[str, Any] = {"action": self.action, "ok": self.ok}
        if self.output is not None:
            data["output"] = self.output
        if self.image is not None:
            data["image"] = self.image if include_image else "<base64 image omitted>"
        if self.error is not None:
            data["error"] = self.error
        if self.fallback is not None:
            data["fallback"] = self.fallback
        return data

    def to_model_payload(self) -> dict:
        """Compact result fed back to a model as a tool response."""
        if self.error is not None:
            return {"action": self.action, "status": "error", "error": self.error}
        payload = {"action": self.action, "status": "success"}
        if self.image is not None:
            payload["output"] = "Screenshot captured."
        else:
            payload["output"] = self.output or ""
        return payload


@dataclass
class ProposedAction:
    """A raw model proposal paired with the provider's call id (if any)."""
    raw: Any
    call_id: str | None = None


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        number = float(value.strip())
    else:
        raise ValueError(f"expected a number, got {value!r}")
    if not math.isfinite(number):
        raise ValueError(f"expected a finite number, got {value!r}")
    return number


def _coerce_coordinate(value: Any) -> tuple[int, int]:
    if isinstance(value, str):
        # "512, 384" or "[512, 384]"
        value = [p for p in value.strip("[]() ").split(",") if p.strip()]
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"coordinate must be an [x, y] pair, got {value!r}")
    x, y = (_to_number(v) for v in value)
    return int(round(x)), int(round(y))


def normalize_action(raw: Any) -> ActionDescriptor:
    """Normalize one untrusted action proposal into an ``ActionDescriptor``.

    Never raises. Accepts the field spellings in ``FIELD_ALIASES``, separate
    ``x``/``y`` keys, and string-typed numbers.
    """
    if isinstance(raw, ActionDescriptor):
        return raw
    if not isinstance(raw, Mapping):
        return ActionDescriptor(type="invalid", problem=f"action must be an object, got {type(raw).__name__}")

    action_type = raw.get("action") or raw.get("type") or ""
    action_type = str(action_type).strip().lower()
    if not action_type:
        return ActionDescriptor(type="invalid", problem="action type is missing")

    fields: dict[str, Any] = {}
    for name, value in raw.items():
        canonical = FIELD_ALIASES.get(name)
        if canonical is not None and value is not None and canonical not in fields:
            fields[canonical] = value
    if "coordinate" not in fields and raw.get("x") is not None and raw.get("y") is not None:
        fields["coordinate"] = [raw["x"], raw["y"]]

    # `key` actions often carry the key in `text`
    if action_type == "key" and "key" not in fields and "text" in fields:
        fields["key"] = fields.pop("text")

    try:
        coordinate = _coerce_coordinate(fields["coordinate"]) if "coordinate" in fields else None
        scroll_amount = (
            int(round(_to_number(fields["scroll_amount"]))) if "scroll_amount" in fields else None
        )
        duration = _to_number(fields["duration"]) if "duration" in fields else None
    except (TypeError, ValueError, OverflowError) as e:
        return ActionDescriptor(type=action_type, problem=f"invalid {action_type} arguments: {e}")

    text = fields.get("text")
    key = fields.get("key")
    direction = fields.get("scroll_direction")
    return ActionDescriptor(
        type=action_type,
        coordinate=coordinate,
        text=str(text) if text is not None else None,
        key=str(key).strip() if key is not None else None,
        scroll_direction=str(direction).strip().lower() if direction is not None else None,
        scroll_amount=scroll_amount,
        duration=duration,
    )
