"""Result type for lookups that can legitimately come back empty.

Callers must handle both branches explicitly:

    match manager.find_reusable(team_id, app_id, kind, certs):
        case Ok(profile):
            ...
        case Err(reason):
            ...
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """A successful result holding a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """A failed result holding the reason."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"called unwrap on Err: {self.error}")


Result = Union[Ok[T], Err[E]]
