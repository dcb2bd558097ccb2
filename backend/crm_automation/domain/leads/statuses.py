from __future__ import annotations

from typing import Final

LEAD_STATUS_NEW: Final[str] = "new"
LEAD_STATUS_CONTACTED: Final[str] = "contacted"
LEAD_STATUS_QUALIFIED: Final[str] = "qualified"
LEAD_STATUS_PROPOSAL: Final[str] = "proposal"
LEAD_STATUS_NEGOTIATION: Final[str] = "negotiation"
LEAD_STATUS_WON: Final[str] = "won"
LEAD_STATUS_LOST: Final[str] = "lost"

LEAD_STATUSES: Final[tuple[str, ...]] = (
    LEAD_STATUS_NEW,
    LEAD_STATUS_CONTACTED,
    LEAD_STATUS_QUALIFIED,
    LEAD_STATUS_PROPOSAL,
    LEAD_STATUS_NEGOTIATION,
    LEAD_STATUS_WON,
    LEAD_STATUS_LOST,
)

TERMINAL_STATUSES: Final[frozenset[str]] = frozenset({LEAD_STATUS_WON, LEAD_STATUS_LOST})

_ALLOWED_TRANSITIONS: Final[dict[str, set[str]]] = {
    LEAD_STATUS_NEW: {LEAD_STATUS_CONTACTED, LEAD_STATUS_QUALIFIED, LEAD_STATUS_LOST},
    LEAD_STATUS_CONTACTED: {LEAD_STATUS_QUALIFIED, LEAD_STATUS_PROPOSAL, LEAD_STATUS_LOST},
    LEAD_STATUS_QUALIFIED: {LEAD_STATUS_PROPOSAL, LEAD_STATUS_NEGOTIATION, LEAD_STATUS_LOST},
    LEAD_STATUS_PROPOSAL: {LEAD_STATUS_NEGOTIATION, LEAD_STATUS_WON, LEAD_STATUS_LOST},
    LEAD_STATUS_NEGOTIATION: {LEAD_STATUS_PROPOSAL, LEAD_STATUS_WON, LEAD_STATUS_LOST},
    LEAD_STATUS_WON: set(),
    # a lost lead can be reopened
    LEAD_STATUS_LOST: {LEAD_STATUS_NEW},
}


class InvalidStatusTransition(ValueError):
    pass


def is_valid_status(value: str) -> bool:
    return value in LEAD_STATUSES


def allowed_next_statuses(current: str) -> set[str]:
    return _ALLOWED_TRANSITIONS.get(current, set())


def assert_valid_transition(current: str, target: str) -> None:
    if not is_valid_status(target):
        raise InvalidStatusTransition(f"Unknown lead status: {target}")
    if current == target:
        return
    allowed = allowed_next_statuses(current)
    if not allowed:
        raise InvalidStatusTransition(f"Lead is already in terminal status: {current}")
    if target not in allowed:
        raise InvalidStatusTransition(f"Cannot transition lead from {current} to {target}")


def default_lead_status() -> str:
    return LEAD_STATUS_NEW
