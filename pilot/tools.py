"""
Tool and structured-output schemas offered to the chat backends.

``computer_action`` is the single function tool used by the tool-calling
backend (one action per call; the model may issue several calls per turn).
``computer_actions`` is the JSON schema the structured backend asks for
(an ordered list of actions plus optional reasoning).

Both are built from the current display size so the model is told the real
coordinate range.
"""

import config

from .actions import ACTION_TYPES

COMPUTER_TOOL_NAME = "computer_action"
STRUCTURED_SCHEMA_TITLE = "computer_actions"

_KEY_HINT = (
    "Text to type or single key to press (e.g., 'a', 'enter', 'space'). "
    "For Ubuntu shortcuts, use the full shortcut as a single key "
    "(e.g., 'ctrl+c', 'ctrl+v', 'ctrl+w') - do NOT send separate key presses "
    "for 'ctrl' and the letter."
)


def _action_properties(width: int, height: int) -> dict:
    return {
        "action": {
            "type": "string",
            "enum": list(ACTION_TYPES),
            "description": "The type of action to perform on the computer",
        },
        "coordinate": {
            "type": "array",
            "items": {"type": "number"},
            "minItems": 2,
            "maxItems": 2,
            "description": (
                f"X,Y pixel coordinates for click actions within the {width}x{height} display "
                f"(e.g., [100, 200]). X range: 0-{width - 1}, Y range: 0-{height - 1}."
            ),
        },
        "text": {"type": "string", "description": _KEY_HINT},
        "scroll_direction": {
            "type": "string",
            "enum": ["up", "down", "left", "right"],
            "description": "Direction to scroll",
        },
        "scroll_amount": {
            "type": "number",
            "description": "Amount to scroll (number of wheel clicks)",
        },
        "duration": {
            "type": "number",
            "description": "Duration to wait in seconds (must be a number, not a string)",
        },
    }


def computer_tool_schema(width: int | None = None, height: int | None = None) -> dict:
    """Return the ``computer_action`` function-tool schema."""
    width = width or config.DISPLAY_WIDTH
    height = height or config.DISPLAY_HEIGHT
    return {
        "name": COMPUTER_TOOL_NAME,
        "description": (
            f"Execute computer actions on the Ubuntu 22.04 LTS desktop ({width}x{height} pixels). "
            "Use this function to interact with the computer by clicking, typing, scrolling, "
            "taking screenshots, or waiting. For key actions, press only ONE key or shortcut at a "
            "time. Prefer clicking over shortcuts: use left_click and double_click to interact "
            "with UI elements, and double_click to open applications and files."
        ),
        "parameters": {
            "type": "object",
            "properties": _action_properties(width, height),
            "required": ["action"],
        },
    }


def structured_output_schema(width: int | None = None, height: int | None = None) -> dict:
    """Return the ``computer_actions`` JSON schema for structured output."""
    width = width or config.DISPLAY_WIDTH
    height = height or config.DISPLAY_HEIGHT
    return {
        "title": STRUCTURED_SCHEMA_TITLE,
        "type": "object",
        "properties": {
            "actions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": _action_properties(width, height),
                    "required": ["action"],
                    "additionalProperties": False,
                },
                "description": (
                    "Ordered computer actions to execute now. Return an empty list only "
                    "when the task is complete."
                ),
            },
            "reasoning": {
                "type": "string",
                "description": "Brief explanation of what the actions do and why.",
            },
        },
        "required": ["actions"],
        "additionalProperties": False,
    }


def get_function_schemas() -> "list[FunctionSchema]":
    """Return the computer tool as ``FunctionSchema`` objects ready for LLM adapters."""
    from .llm.base import FunctionSchema
    ts = computer_tool_schema()
    return [
        FunctionSchema(
            name=ts["name"],
            description=ts["description"],
            parameters=ts["parameters"],
        )
    ]
