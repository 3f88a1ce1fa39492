"""Explicit success/failure values for operations whose failure is expected.

Token verification and single-use redemption return ``Ok`` or ``Err`` instead
of raising so callers must handle the failure branch.  ``unwrap`` raises the
carried ``ServiceError`` for call sites (HTTP handlers) that want exception
semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from junicore.service.errors import ServiceError

T = TypeVar("T")
E = TypeVar("E", bound=ServiceError)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err[E]]

__all__ = ["Ok", "Err", "Result"]
