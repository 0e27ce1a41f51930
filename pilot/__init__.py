"""Agent orchestration core: drives a remote desktop from a textual instruction.

Lazy imports keep ``import pilot.actions`` free of the desktop SDK:
pilot.runtime → pilot.desktop → orgo
"""


def __getattr__(name: str):
    if name in ("PilotRuntime", "build_runtime"):
        from .runtime import PilotRuntime, build_runtime
        return PilotRuntime if name == "PilotRuntime" else build_runtime
    if name in ("SessionRegistry", "Session"):
        from .session import Session, SessionRegistry
        return SessionRegistry if name == "SessionRegistry" else Session
    if name == "TurnLoop":
        from .turn_loop import TurnLoop
        return TurnLoop
    raise AttributeError(f"module 'pilot' has no attribute {name!r}")
