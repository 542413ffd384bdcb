"""
Transition-table state machines for records with a lifecycle ``status``.

A machine is a map ``current -> {allowed next}``. A transition is legal
only if the requested status is one of the next states of the current one:
no skips, no backward moves, no self-loops, no unknown strings, nothing
out of a terminal state.

``transition_record`` applies a transition as one read-modify-write inside
a single transaction. The UPDATE is conditioned on the status that was
read (compare-and-set), so a concurrent writer can never be overwritten
and a failed check never reaches the UPDATE.
"""

import logging
import re
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from sqlalchemy import text

from caregate.database import now_ms
from caregate.errors import Forbidden, NotFound

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


class StateMachine:
    """Closed set of states plus the directed edges between them."""

    def __init__(self, name: str, transitions: Mapping[str, Iterable[str]], terminal: Iterable[str] = ()):
        self.name = name
        self.transitions: Dict[str, FrozenSet[str]] = {
            state: frozenset(nxt) for state, nxt in transitions.items()
        }
        for state, nxt in self.transitions.items():
            if state in nxt:
                raise ValueError(f"{name}: self-loop on '{state}' is not allowed")

        states = set(self.transitions) | set(terminal)
        for nxt in self.transitions.values():
            states |= nxt
        self.states: FrozenSet[str] = frozenset(states)

    def next_states(self, current: str) -> FrozenSet[str]:
        return self.transitions.get(current, frozenset())

    def is_terminal(self, state: str) -> bool:
        return state in self.states and not self.next_states(state)

    def can_transition(self, current: str, requested: str) -> bool:
        return requested in self.next_states(current)

    def check_transition(self, current: str, requested: str) -> None:
        """Raise ``Forbidden`` with a specific reason unless the edge exists."""
        if requested not in self.states:
            raise Forbidden(f"Unknown {self.name} status '{requested}'.")
        if current not in self.states:
            raise Forbidden(f"Record is in a status '{current}' this {self.name} flow does not govern.")
        if self.is_terminal(current):
            raise Forbidden(f"Status '{current}' is terminal.")
        if not self.can_transition(current, requested):
            allowed = ", ".join(sorted(self.next_states(current)))
            raise Forbidden(f"Illegal transition '{current}' -> '{requested}' (allowed: {allowed}).")

    def __repr__(self) -> str:
        return f"StateMachine({self.name!r}, states={sorted(self.states)})"


ExtraUpdates = Callable[[Mapping[str, Any], str, int], Dict[str, Any]]
Guard = Callable[[Mapping[str, Any]], None]


def transition_record(
    engine,
    table: str,
    record_id: str,
    requested: str,
    machine: StateMachine,
    guard: Optional[Guard] = None,
    extra_updates: Optional[ExtraUpdates] = None,
    now: Optional[int] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Move ``table[record_id].status`` to *requested*.

    Order inside the transaction: load (``NotFound``), *guard* (tenancy and
    ownership checks on the loaded row), machine check (``Forbidden``),
    then a single conditional UPDATE that also sets ``updated_at`` and any
    columns returned by *extra_updates*. Returns ``(previous_status, row as
    written)``.
    """
    if not _IDENTIFIER.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    now = now if now is not None else now_ms()

    with engine.begin() as conn:
        select_sql = f"SELECT * FROM {table} WHERE id = :id"
        if conn.dialect.name == "postgresql":
            select_sql += " FOR UPDATE"
        row = conn.execute(text(select_sql), {"id": record_id}).mappings().first()
        if row is None:
            raise NotFound(f"{machine.name.capitalize()} record not found.")

        if guard is not None:
            guard(row)

        current = row["status"]
        machine.check_transition(current, requested)

        updates = {"status": requested, "updated_at": now}
        if extra_updates is not None:
            updates.update(extra_updates(row, requested, now))
        for column in updates:
            if not _IDENTIFIER.match(column):
                raise ValueError(f"Invalid column name: {column!r}")

        assignments = ", ".join(f"{column} = :set_{column}" for column in updates)
        params = {f"set_{column}": value for column, value in updates.items()}
        params.update({"id": record_id, "current": current})
        result = conn.execute(
            text(f"UPDATE {table} SET {assignments} WHERE id = :id AND status = :current"),
            params,
        )
        if result.rowcount != 1:
            raise Forbidden(f"Status of {table} record changed concurrently; transition rejected.")

        written = dict(row)
        written.update(updates)

    logger.info("%s %s: %s -> %s", table, record_id, current, requested)
    return current, written
