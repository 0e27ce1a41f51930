"""Tests for iteration policies, limits and prompt composition."""

from __future__ import annotations

import pytest

from pilot import turn_limits
from pilot.prompts import compose_prompt, render_history
from pilot.session import SessionRegistry
from pilot.turn_limits import get_limit, resolve_iterations


def test_single_step_is_one() -> None:
    assert resolve_iterations("single_step", "structured") == 1
    assert resolve_iterations("single_step", "native", 7) == 1


def test_fixed_requires_count_and_is_capped() -> None:
    assert resolve_iterations("fixed", "native", 3) == 3
    assert resolve_iterations("fixed", "native", 10_000) == get_limit("fixed.max_iterations")
    with pytest.raises(ValueError):
        resolve_iterations("fixed", "native")
    with pytest.raises(ValueError):
        resolve_iterations("fixed", "native", 0)


def test_run_to_completion_uses_backend_ceiling() -> None:
    assert resolve_iterations("run_to_completion", "structured") == get_limit("structured.max_iterations")
    assert resolve_iterations("run_to_completion", "tool_calling", 2) == 2


def test_unknown_policy_and_limit() -> None:
    with pytest.raises(ValueError):
        resolve_iterations("until_bored", "native")
    with pytest.raises(KeyError):
        get_limit("native.max_iteration")


def test_config_overrides(monkeypatch) -> None:
    monkeypatch.setattr(turn_limits, "_overrides", {"structured.max_iterations": 2})
    assert resolve_iterations("run_to_completion", "structured") == 2


def test_compose_prompt_for_new_and_resumed_sessions() -> None:
    session, _ = SessionRegistry().get_or_create(None, "open the terminal")
    assert compose_prompt(session) == "open the terminal"

    session.append("narrative", {"text": "I see the desktop"})
    session.append("action", {"type": "double_click", "coordinate": [10, 20]})
    session.append("observation", {"action": "double_click", "ok": False, "error": "missed"})
    prompt = compose_prompt(session)
    assert prompt.startswith("open the terminal\n\n## Progress so far")
    assert "Do not repeat them; continue from this point." in prompt
    assert "double_click failed: missed" in prompt


def test_render_history_keeps_most_recent() -> None:
    session, _ = SessionRegistry().get_or_create(None, "x")
    for i in range(5):
        session.append("narrative", {"text": f"step {i}"})
    rendered = render_history(session.history, max_entries=2)
    assert rendered.splitlines() == [
        "(3 earlier entries omitted)",
        "[turn 0] assistant: step 3",
        "[turn 0] assistant: step 4",
    ]
