"""Tagged results for public vault operations.

Public operations return ``Ok(value)`` or ``Err(error)`` instead of
raising, so callers can pattern-match::

    match await vault.push(cwd, sources):
        case Ok(result):
            print(result.variables)
        case Err(KeyNotFoundError() as err):
            print(err.checked)
        case Err(err):
            print(err.message)

``Err.error`` is always an exception instance; ``unwrap()`` raises it.
"""
from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default):
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> NoReturn:
        raise self.error

    def unwrap_or(self, default):
        return default


Result = Union[Ok[T], Err[E]]
