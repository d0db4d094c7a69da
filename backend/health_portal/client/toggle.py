"""
Client-side state for optimistic sharing toggles and abandonable fetches.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional


class ToggleState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class SharingToggle:
    """Optimistic flag: shown as the new value while pending, restored on failure.

    ``value`` is what the UI displays; ``previous`` is only set while pending.
    """

    record_id: str
    value: bool
    state: ToggleState = ToggleState.IDLE
    previous: Optional[bool] = None
    on_change: Optional[Callable[[bool], None]] = field(default=None, repr=False)

    def _set(self, value: bool) -> None:
        self.value = value
        if self.on_change is not None:
            self.on_change(value)

    def begin(self, new_value: bool) -> None:
        if self.state == ToggleState.PENDING:
            raise RuntimeError(f"Toggle for {self.record_id} is already pending")
        self.previous = self.value
        self.state = ToggleState.PENDING
        self._set(new_value)

    def commit(self, confirmed: Optional[bool] = None) -> None:
        if self.state != ToggleState.PENDING:
            raise RuntimeError(f"Toggle for {self.record_id} is not pending")
        self.previous = None
        self.state = ToggleState.COMMITTED
        if confirmed is not None and confirmed != self.value:
            self._set(confirmed)

    def rollback(self) -> None:
        if self.state != ToggleState.PENDING:
            raise RuntimeError(f"Toggle for {self.record_id} is not pending")
        previous = self.previous
        self.previous = None
        self.state = ToggleState.ROLLED_BACK
        self._set(previous)

    async def run(self, new_value: bool, persist: Callable[[bool], Awaitable[Optional[bool]]]) -> bool:
        """Apply *new_value* now, persist it, roll back if persisting fails.

        *persist* may return the stored value, which then wins.
        """
        self.begin(new_value)
        try:
            confirmed = await persist(new_value)
        except BaseException:
            self.rollback()
            raise
        self.commit(confirmed)
        return self.value


class RelevanceGuard:
    """Generation counter: a result is published only if its token is still current."""

    def __init__(self):
        self._generation = 0

    def issue(self) -> int:
        self._generation += 1
        return self._generation

    def abandon(self) -> None:
        self._generation += 1

    def is_current(self, token: int) -> bool:
        return token == self._generation
