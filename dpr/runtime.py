from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock

# Reconciliation state machine:
#   idle -> collecting -> rendering -> validating -> applying -> idle
#                                                \-> rejected -> idle
IDLE = "idle"
COLLECTING = "collecting"
RENDERING = "rendering"
VALIDATING = "validating"
APPLYING = "applying"
REJECTED = "rejected"

_ALLOWED = {
    IDLE: {COLLECTING},
    COLLECTING: {RENDERING, IDLE},
    RENDERING: {VALIDATING, IDLE},
    VALIDATING: {APPLYING, REJECTED, IDLE},
    APPLYING: {IDLE},
    REJECTED: {IDLE},
}

OUTCOMES = ("applied", "unchanged", "rejected", "skipped-container", "fatal")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ReconciliationResult:
    trigger: str
    outcome: str
    diagnostic: str = ""
    container: str | None = None
    routes: int | None = None
    digest: str | None = None
    timestamp: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome '{self.outcome}'. Use one of {', '.join(OUTCOMES)}.")


class RuntimeState:
    """In-memory view of the reconciler: current cycle state and recent results."""

    def __init__(self, history: int = 50) -> None:
        self.lock = Lock()
        self.state = IDLE
        self.transitions: deque[tuple[str, str]] = deque(maxlen=history * 6)
        self.results: deque[ReconciliationResult] = deque(maxlen=history)
        self.cycles = 0
        self.last_applied_digest: str | None = None

    def transition(self, new_state: str) -> None:
        with self.lock:
            if new_state not in _ALLOWED[self.state]:
                raise RuntimeError(f"Illegal reconciler transition {self.state} -> {new_state}")
            self.transitions.append((self.state, new_state))
            self.state = new_state

    def reset(self) -> None:
        """Force back to idle after an aborted cycle."""
        with self.lock:
            if self.state != IDLE:
                self.transitions.append((self.state, IDLE))
            self.state = IDLE

    def add_result(self, result: ReconciliationResult) -> None:
        with self.lock:
            self.results.append(result)
            if result.outcome != "skipped-container":
                self.cycles += 1
            if result.outcome == "applied":
                self.last_applied_digest = result.digest

