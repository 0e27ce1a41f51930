"""Tests for action normalization and key mapping."""

from __future__ import annotations

from pilot.actions import ActionDescriptor, ActionResult, map_key, normalize_action


def test_string_coordinates_become_ints() -> None:
    d = normalize_action({"action": "left_click", "coordinate": ["10", "20"]})
    assert d.coordinate == (10, 20)
    assert all(isinstance(v, int) for v in d.coordinate)
    assert d.problem is None


def test_coordinate_aliases_and_separate_xy() -> None:
    assert normalize_action({"action": "double_click", "coords": [3, 4]}).coordinate == (3, 4)
    assert normalize_action({"type": "right_click", "position": "5, 6"}).coordinate == (5, 6)
    assert normalize_action({"action": "left_click", "x": "7.6", "y": 8}).coordinate == (8, 8)


def test_numeric_fields_coerced() -> None:
    d = normalize_action({"action": "scroll", "direction": "UP", "amount": "3"})
    assert d.scroll_direction == "up"
    assert d.scroll_amount == 3
    w = normalize_action({"action": "wait", "duration": "2.5"})
    assert w.duration == 2.5


def test_key_taken_from_text_field() -> None:
    d = normalize_action({"action": "key", "text": "ctrl+c"})
    assert d.key == "ctrl+c"
    assert d.text is None


def test_type_is_case_insensitive() -> None:
    assert normalize_action({"action": "Left_Click", "coordinate": [1, 1]}).type == "left_click"


def test_unparseable_input_is_reported_not_raised() -> None:
    assert normalize_action("click somewhere").problem
    assert normalize_action({"coordinate": [1, 2]}).type == "invalid"
    bad = normalize_action({"action": "left_click", "coordinate": ["ten", "20"]})
    assert bad.type == "left_click"
    assert "invalid left_click arguments" in bad.problem
    assert normalize_action({"action": "wait", "duration": True}).problem


def test_unknown_type_is_preserved() -> None:
    d = normalize_action({"action": "drag", "coordinate": [1, 2]})
    assert d.type == "drag"
    assert not d.supported
    assert d.problem is None


def test_descriptor_passthrough() -> None:
    d = ActionDescriptor(type="screenshot")
    assert normalize_action(d) is d


def test_changes_state() -> None:
    assert ActionDescriptor(type="left_click").changes_state
    assert ActionDescriptor(type="key").changes_state
    assert not ActionDescriptor(type="wait").changes_state
    assert not ActionDescriptor(type="screenshot").changes_state


def test_map_key() -> None:
    assert map_key("enter") == "Enter"
    assert map_key("Return") == "Enter"
    assert map_key("ctrl+c") == "Ctrl+c"
    assert map_key("ctrl+shift+t") == "Ctrl+Shift+t"
    assert map_key("alt+tab") == "Alt+Tab"
    assert map_key("F5") == "F5"
    assert map_key("a") == "a"


def test_result_dict_omits_image_by_default() -> None:
    r = ActionResult(action="screenshot", image="abc")
    assert r.to_dict()["image"] == "<base64 image omitted>"
    assert r.to_dict(include_image=True)["image"] == "abc"
    assert r.to_model_payload() == {"action": "screenshot", "status": "success", "output": "Screenshot captured."}
    failed = ActionResult(action="key", error="boom")
    assert not failed.ok
    assert failed.to_model_payload()["status"] == "error"


def test_non_finite_numbers_are_reported_not_raised() -> None:
    for coordinate in ([1e999, 5], ["inf", "5"], ["1e400", 3], [float("nan"), 1], [10**400, 1]):
        d = normalize_action({"action": "left_click", "coordinate": coordinate})
        assert d.type == "left_click"
        assert "invalid left_click arguments" in d.problem
    assert normalize_action({"action": "scroll", "direction": "down", "amount": "-inf"}).problem
    assert normalize_action({"action": "wait", "duration": "nan"}).problem
