"""Request validation — checks an inbound body against a field contract.

Pure functions only: no I/O, deterministic on their inputs.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from relay.errors import ErrorCode, validation_error

FieldType = Literal["string", "number", "boolean", "object", "array"]

_TYPE_MAP: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "number": (int, float),
    "boolean": bool,
    "object": dict,
    "array": list,
}


@dataclass(frozen=True)
class RequestContract:
    """Declared shape of a request body.

    required   — names that must be present and non-empty
    optional   — names that may be present
    types      — expected type per name, checked when the value is present
    predicate  — extra check on the whole body; must return True
    """

    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    types: Mapping[str, FieldType] = field(default_factory=dict)
    predicate: Callable[[dict[str, Any]], bool] | None = None

    @property
    def declared(self) -> tuple[str, ...]:
        return self.required + tuple(n for n in self.optional if n not in self.required)


def is_empty(value: Any) -> bool:
    """None, blank strings and empty containers count as missing. 0 and False do not."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _check_type(name: str, value: Any, expected: FieldType) -> None:
    # bool is a subclass of int in Python, so check bool explicitly for "number"
    if expected == "number" and isinstance(value, bool):
        raise validation_error(
            f"Field '{name}' must be a number, got boolean",
            detail={"fields": [name]},
        )
    if not isinstance(value, _TYPE_MAP[expected]):
        raise validation_error(
            f"Field '{name}' must be of type {expected}, got {type(value).__name__}",
            detail={"fields": [name]},
        )


def validate_body(raw: Any, contract: RequestContract) -> dict[str, Any]:
    """Check ``raw`` against ``contract`` and return the narrowed body.

    The result holds only declared names that were present in ``raw``;
    undeclared keys are dropped and nothing is added.

    Raises a validation ``RelayError`` naming the offending field(s).
    """
    if not isinstance(raw, dict):
        raise validation_error(
            f"Request body must be a JSON object, got {type(raw).__name__}",
        )

    missing = [name for name in contract.required if is_empty(raw.get(name))]
    if missing:
        raise validation_error(
            f"Missing required field{'s' if len(missing) > 1 else ''}: {', '.join(missing)}",
            code=ErrorCode.INPUT_REQUIRED,
            detail={"fields": missing},
        )

    narrowed = {name: raw[name] for name in contract.declared if name in raw}

    for name, expected in contract.types.items():
        if name in narrowed and narrowed[name] is not None:
            _check_type(name, narrowed[name], expected)

    if contract.predicate is not None:
        try:
            ok = contract.predicate(narrowed)
        except Exception as e:
            raise validation_error(
                "Request data failed validation",
                detail={"reason": str(e)},
            ) from e
        if not ok:
            raise validation_error("Request data failed validation")

    return narrowed
