from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal, Optional, Union

from .locks import RWLock

CredentialStep = Literal["api_key", "api_secret"]


@dataclass(frozen=True)
class EditingSignalField:
    signal_id: str
    field: str


@dataclass(frozen=True)
class EditingSetting:
    name: str


@dataclass(frozen=True)
class EditingCredential:
    step: CredentialStep
    # filled in once the key step has been answered
    api_key: str = ""

    def __repr__(self) -> str:
        return f"EditingCredential(step={self.step!r})"


PendingEdit = Union[EditingSignalField, EditingSetting, EditingCredential]


class OperatorSessionStore:
    """At most one pending edit per operator. No expiry: a stale target stays
    until the operator's next message consumes it."""

    def __init__(self) -> None:
        self._lock = RWLock()
        self._sessions: Dict[int, PendingEdit] = {}

    def get(self, operator_id: int) -> Optional[PendingEdit]:
        with self._lock.read():
            return self._sessions.get(operator_id)

    def set(self, operator_id: int, pending: PendingEdit) -> None:
        with self._lock.write():
            self._sessions[operator_id] = pending

    def delete(self, operator_id: int) -> None:
        with self._lock.write():
            self._sessions.pop(operator_id, None)

    def clear_if(self, operator_id: int, pending: PendingEdit) -> bool:
        """Drop the session only if it is still ``pending``."""
        with self._lock.write():
            if self._sessions.get(operator_id) == pending:
                del self._sessions[operator_id]
                return True
            return False
