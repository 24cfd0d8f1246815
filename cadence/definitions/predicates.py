"""Declarative predicates evaluated over an instance scope.

Predicates are plain data: a tagged variant selected by ``kind``. They never
execute code from the definition, and evaluation is a pure function of the
scope passed in.
"""

from __future__ import annotations

import operator
from typing import Annotated, Any, Callable, Iterator, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field


class _Missing:
    """Sentinel for a field path that does not resolve."""

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def resolve_field(scope: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted ``path`` through nested mappings.

    Returns ``MISSING`` when any segment is absent. ``None`` values are
    returned as-is so callers can tell "unset" from "explicitly null".
    """
    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


class _PredicateBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def field_paths(self) -> Iterator[str]:
        """Field paths this predicate reads."""
        return iter(())


class ComparePredicate(_PredicateBase):
    """``field <op> value``. A missing field or incomparable types is False."""

    kind: Literal["compare"] = "compare"
    field: str
    op: Literal["eq", "ne", "gt", "gte", "lt", "lte"] = "eq"
    value: Any = None

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        actual = resolve_field(scope, self.field)
        if actual is MISSING:
            return False
        try:
            return bool(_COMPARATORS[self.op](actual, self.value))
        except TypeError:
            return False

    def field_paths(self) -> Iterator[str]:
        yield self.field


class InPredicate(_PredicateBase):
    """Category membership."""

    kind: Literal["in"] = "in"
    field: str
    values: list[Any]

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        actual = resolve_field(scope, self.field)
        return actual is not MISSING and actual in self.values

    def field_paths(self) -> Iterator[str]:
        yield self.field


class FlagPredicate(_PredicateBase):
    """Boolean flag check; an absent flag counts as unset."""

    kind: Literal["flag"] = "flag"
    field: str
    expected: bool = True

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        actual = resolve_field(scope, self.field)
        return (actual is not MISSING and actual is not None and bool(actual)) == self.expected

    def field_paths(self) -> Iterator[str]:
        yield self.field


class ExistsPredicate(_PredicateBase):
    kind: Literal["exists"] = "exists"
    field: str

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        return resolve_field(scope, self.field) is not MISSING

    def field_paths(self) -> Iterator[str]:
        yield self.field


class AllPredicate(_PredicateBase):
    kind: Literal["all"] = "all"
    of: list[Predicate] = Field(min_length=1)

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        return all(p.evaluate(scope) for p in self.of)

    def field_paths(self) -> Iterator[str]:
        for p in self.of:
            yield from p.field_paths()


class AnyPredicate(_PredicateBase):
    kind: Literal["any"] = "any"
    of: list[Predicate] = Field(min_length=1)

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        return any(p.evaluate(scope) for p in self.of)

    def field_paths(self) -> Iterator[str]:
        for p in self.of:
            yield from p.field_paths()


class NotPredicate(_PredicateBase):
    kind: Literal["not"] = "not"
    predicate: Predicate

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        return not self.predicate.evaluate(scope)

    def field_paths(self) -> Iterator[str]:
        yield from self.predicate.field_paths()


Predicate = Annotated[
    Union[
        ComparePredicate,
        InPredicate,
        FlagPredicate,
        ExistsPredicate,
        AllPredicate,
        AnyPredicate,
        NotPredicate,
    ],
    Field(discriminator="kind"),
]

AllPredicate.model_rebuild()
AnyPredicate.model_rebuild()
NotPredicate.model_rebuild()


__all__ = [
    "MISSING",
    "Predicate",
    "ComparePredicate",
    "InPredicate",
    "FlagPredicate",
    "ExistsPredicate",
    "AllPredicate",
    "AnyPredicate",
    "NotPredicate",
    "resolve_field",
]
