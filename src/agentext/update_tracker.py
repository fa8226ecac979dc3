from __future__ import annotations

import logging

from agentext.exceptions import UpdateStateTransitionError
from agentext.models import UpdateState

logger: logging.Logger = logging.getLogger(__name__)

TRANSITIONS: dict[UpdateState, frozenset[UpdateState]] = {
    UpdateState.UNKNOWN: frozenset({UpdateState.CHECKING_FOR_UPDATES}),
    UpdateState.CHECKING_FOR_UPDATES: frozenset(
        {UpdateState.UPDATE_AVAILABLE, UpdateState.UP_TO_DATE, UpdateState.ERROR}
    ),
    UpdateState.UPDATE_AVAILABLE: frozenset({UpdateState.UPDATING}),
    UpdateState.UPDATING: frozenset(
        {UpdateState.UPDATED, UpdateState.UPDATED_NEEDS_RESTART, UpdateState.ERROR}
    ),
}

TERMINAL_STATES = frozenset(
    {
        UpdateState.ERROR,
        UpdateState.UP_TO_DATE,
        UpdateState.UPDATED,
        UpdateState.UPDATED_NEEDS_RESTART,
    }
)


class UpdateStateTracker(object):
    """Per-session update state of each extension, for display only."""

    def __init__(self) -> None:
        self._states: dict[str, UpdateState] = {}

    def get(self, name: str) -> UpdateState:
        return self._states.get(name, UpdateState.UNKNOWN)

    def transition(self, name: str, new_state: UpdateState) -> UpdateState:
        current = self.get(name)
        if new_state not in TRANSITIONS.get(current, frozenset()):
            raise UpdateStateTransitionError(
                f"{name}: cannot move from '{current.value}' to '{new_state.value}'"
            )
        self._states[name] = new_state
        logger.debug(f"{name}: {current.value} -> {new_state.value}")
        return new_state

    def is_terminal(self, name: str) -> bool:
        return self.get(name) in TERMINAL_STATES

    def forget(self, name: str) -> None:
        self._states.pop(name, None)

    def reset(self) -> None:
        self._states.clear()

    def snapshot(self) -> dict[str, UpdateState]:
        return dict(self._states)
