"""
Typed job results.

Background jobs return Ok/Err values instead of letting exceptions cross the
scheduler boundary, so retry and failure policy is decided by the caller.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        return {"ok": True, "value": value}


@dataclass(frozen=True)
class Err:
    reason: str
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "reason": self.reason, "retryable": self.retryable}


Result = Union[Ok[T], Err]
