from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from lemmyfed_harness.errors import AbsentValueError

T = TypeVar("T")


@dataclass(frozen=True)
class Present(Generic[T]):
    value: T

    @property
    def is_present(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

    def value_or(self, default: T) -> T:
        return self.value


@dataclass(frozen=True)
class Absent:
    reason: str = "not available on this instance"

    @property
    def is_present(self) -> bool:
        return False

    def unwrap(self):  # noqa: ANN201
        raise AbsentValueError(f"value is absent: {self.reason}")

    def value_or(self, default: T) -> T:
        return default


Maybe = Union[Present[T], Absent]
