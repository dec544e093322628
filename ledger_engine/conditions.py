"""
Condition Expressions Module

A small expression language for write preconditions, query filters and key
conditions. Items are plain dictionaries; a missing item is evaluated as an
empty one so existence checks work on absent records.

    Attr("version").not_exists() | Attr("version").eq(3)
    Key("tenant_id").eq("acme") & Key("account_id").eq("A-1")
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple


_MISSING = object()


class Condition(ABC):
    """Boolean expression over a single item"""

    @abstractmethod
    def evaluate(self, item: Optional[Dict[str, Any]]) -> bool:
        pass

    def __and__(self, other: 'Condition') -> 'Condition':
        return And(self, other)

    def __or__(self, other: 'Condition') -> 'Condition':
        return Or(self, other)

    def __invert__(self) -> 'Condition':
        return Not(self)


class And(Condition):
    def __init__(self, *conditions: Condition):
        self.conditions = conditions

    def evaluate(self, item: Optional[Dict[str, Any]]) -> bool:
        return all(c.evaluate(item) for c in self.conditions)

    def __repr__(self) -> str:
        return "(" + " AND ".join(repr(c) for c in self.conditions) + ")"


class Or(Condition):
    def __init__(self, *conditions: Condition):
        self.conditions = conditions

    def evaluate(self, item: Optional[Dict[str, Any]]) -> bool:
        return any(c.evaluate(item) for c in self.conditions)

    def __repr__(self) -> str:
        return "(" + " OR ".join(repr(c) for c in self.conditions) + ")"


class Not(Condition):
    def __init__(self, condition: Condition):
        self.condition = condition

    def evaluate(self, item: Optional[Dict[str, Any]]) -> bool:
        return not self.condition.evaluate(item)

    def __repr__(self) -> str:
        return f"NOT {self.condition!r}"


class Comparison(Condition):
    """Single attribute test"""

    def __init__(self, name: str, op: str, *values: Any):
        self.name = name
        self.op = op
        self.values = values

    def evaluate(self, item: Optional[Dict[str, Any]]) -> bool:
        current = (item or {}).get(self.name, _MISSING)
        op = self.op
        if op == "exists":
            return current is not _MISSING
        if op == "not_exists":
            return current is _MISSING
        if op == "ne":
            return current is _MISSING or current != self.values[0]
        if current is _MISSING:
            return False
        if op == "eq":
            return current == self.values[0]
        if op == "in":
            return current in self.values[0]
        if op == "begins_with":
            return isinstance(current, str) and current.startswith(self.values[0])
        try:
            if op == "lt":
                return current < self.values[0]
            if op == "lte":
                return current <= self.values[0]
            if op == "gt":
                return current > self.values[0]
            if op == "gte":
                return current >= self.values[0]
            if op == "between":
                return self.values[0] <= current <= self.values[1]
        except TypeError:
            # Mismatched types never satisfy an ordering test
            return False
        raise ValueError(f"Unknown operator: {op}")

    def __repr__(self) -> str:
        return f"{self.name} {self.op} {self.values!r}"


class Attr:
    """Builder for conditions on a non-key attribute"""

    def __init__(self, name: str):
        self.name = name

    def eq(self, value: Any) -> Comparison:
        return Comparison(self.name, "eq", value)

    def ne(self, value: Any) -> Comparison:
        return Comparison(self.name, "ne", value)

    def lt(self, value: Any) -> Comparison:
        return Comparison(self.name, "lt", value)

    def lte(self, value: Any) -> Comparison:
        return Comparison(self.name, "lte", value)

    def gt(self, value: Any) -> Comparison:
        return Comparison(self.name, "gt", value)

    def gte(self, value: Any) -> Comparison:
        return Comparison(self.name, "gte", value)

    def between(self, low: Any, high: Any) -> Comparison:
        return Comparison(self.name, "between", low, high)

    def begins_with(self, prefix: str) -> Comparison:
        return Comparison(self.name, "begins_with", prefix)

    def is_in(self, values: Any) -> Comparison:
        return Comparison(self.name, "in", tuple(values))

    def exists(self) -> Comparison:
        return Comparison(self.name, "exists")

    def not_exists(self) -> Comparison:
        return Comparison(self.name, "not_exists")


class KeyCondition:
    """
    Conjunction of key tests for a query: equality on the partition key and
    at most one test on the sort key.
    """

    def __init__(self, parts: List[Comparison]):
        self.parts = parts

    def __and__(self, other: 'KeyCondition') -> 'KeyCondition':
        return KeyCondition(self.parts + other.parts)

    def split(self, partition_key: str, sort_key: Optional[str]) -> Tuple[Any, Optional[Comparison]]:
        """Return (partition value, sort key comparison) for the given key schema"""
        partition_value = _MISSING
        sort_condition = None
        for part in self.parts:
            if part.name == partition_key and part.op == "eq":
                partition_value = part.values[0]
            elif sort_key is not None and part.name == sort_key and sort_condition is None:
                sort_condition = part
            else:
                raise ValueError(f"Key condition on {part.name!r} does not match key schema "
                                 f"({partition_key}, {sort_key})")
        if partition_value is _MISSING:
            raise ValueError(f"Key condition must test {partition_key!r} for equality")
        return partition_value, sort_condition

    def __repr__(self) -> str:
        return " AND ".join(repr(p) for p in self.parts)


class Key:
    """Builder for key conditions"""

    def __init__(self, name: str):
        self.name = name

    def eq(self, value: Any) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "eq", value)])

    def lt(self, value: Any) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "lt", value)])

    def lte(self, value: Any) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "lte", value)])

    def gt(self, value: Any) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "gt", value)])

    def gte(self, value: Any) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "gte", value)])

    def between(self, low: Any, high: Any) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "between", low, high)])

    def begins_with(self, prefix: str) -> KeyCondition:
        return KeyCondition([Comparison(self.name, "begins_with", prefix)])
