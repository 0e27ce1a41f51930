"""pilot/turn_limits.py — Central iteration limits registry.

Every Turn Loop bound lives here as a named constant.
Config.json overrides via ``"turn_limits"``.

Public API:
    get_limit(name)           — lookup (int), KeyError on typo
    resolve_iterations(...)   — apply an iteration policy to a backend
    reload()                  — re-read config overrides
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Default limits
# ---------------------------------------------------------------------------

DEFAULTS: dict[str, int] = {
    # Run-to-completion ceilings, one per decision backend
    "native.max_iterations":             10,
    "structured.max_iterations":          5,
    "tool_calling.max_iterations":       10,
    # Internal iterations the native agent runtime may take per decision
    "native.agent_iterations":            1,
    # Largest N accepted for the fixed-step policy
    "fixed.max_iterations":              20,
}

ITERATION_POLICIES = ("single_step", "fixed", "run_to_completion")

# ---------------------------------------------------------------------------
# Runtime state: overrides from config.json
# ---------------------------------------------------------------------------

_overrides: dict[str, int] = {}


def reload() -> None:
    """Re-read config.json overrides for iteration limits.

    Called by ``config.reload_config()`` and at import time.
    """
    global _overrides
    import config
    _overrides = config.get("turn_limits", {})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_limit(name: str) -> int:
    """Return the effective limit for *name*.

    Raises ``KeyError`` if *name* is not in DEFAULTS (catches typos).
    """
    if name not in DEFAULTS:
        raise KeyError(f"Unknown turn limit: {name!r}")
    override = _overrides.get(name)
    if override is not None:
        return int(override)
    return DEFAULTS[name]


def resolve_iterations(policy: str, backend: str, requested: int | None = None) -> int:
    """Turn an iteration policy into a concrete iteration bound.

    - ``single_step``: exactly one decision cycle.
    - ``fixed``: ``requested`` cycles, capped at ``fixed.max_iterations``.
    - ``run_to_completion``: the backend's ceiling (``<backend>.max_iterations``),
      or ``requested`` when it is smaller.

    Raises ``ValueError`` for an unknown policy or a missing/invalid count.
    """
    if policy == "single_step":
        return 1
    if policy == "fixed":
        if requested is None or requested < 1:
            raise ValueError("fixed iteration policy requires max_iterations >= 1")
        return min(requested, get_limit("fixed.max_iterations"))
    if policy == "run_to_completion":
        ceiling = get_limit(f"{backend}.max_iterations")
        if requested is not None and 1 <= requested < ceiling:
            return requested
        return ceiling
    raise ValueError(f"Unknown iteration policy: {policy!r}")


# ---------------------------------------------------------------------------
# Initialize overrides at import time
# ---------------------------------------------------------------------------

try:
    reload()
except Exception:
    pass  # config may not be loadable yet (e.g., during testing)
