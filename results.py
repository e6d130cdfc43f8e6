"""Tagged results returned by the mutation handlers.

Handlers return exactly one of :class:`Ok`, :class:`ValidationErr` or
:class:`Err`; callers branch on the type instead of inspecting the payload.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from schemas import FieldErrors


class ErrorKind(str, Enum):
    unauthorized = "unauthorized"
    not_found = "not_found"
    conflict = "conflict"
    validation = "validation"
    internal = "internal"


@dataclass(frozen=True)
class Ok:
    data: Any = None
    count: Optional[int] = None

    success = True


@dataclass(frozen=True)
class ValidationErr:
    fields: FieldErrors = field(default_factory=dict)

    success = False


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    success = False


Result = Union[Ok, ValidationErr, Err]
