"""Filter matching and aggregation over plain document dicts.

Supports the subset of Mongo-style query syntax the services rely on:
equality, ``$gt``/``$gte``/``$lt``/``$lte``/``$ne``/``$in``, ``$regex`` with
``$options``, ``$or`` and ``$and``. Pipelines support ``$match``, ``$group``,
``$sort`` and ``$limit``.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

Document = Mapping[str, Any]

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda left, right: left > right,
    "$gte": lambda left, right: left >= right,
    "$lt": lambda left, right: left < right,
    "$lte": lambda left, right: left <= right,
}


def _is_operator_block(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(
        isinstance(key, str) and key.startswith("$") for key in value
    )


def _match_operators(actual: Any, operators: Mapping[str, Any]) -> bool:
    for operator, expected in operators.items():
        if operator in _COMPARATORS:
            if actual is None or expected is None:
                return False
            try:
                if not _COMPARATORS[operator](actual, expected):
                    return False
            except TypeError:
                return False
        elif operator == "$ne":
            if actual == expected:
                return False
        elif operator == "$in":
            if actual not in expected:
                return False
        elif operator == "$regex":
            if actual is None:
                return False
            flags = re.IGNORECASE if "i" in operators.get("$options", "") else 0
            if re.search(expected, str(actual), flags) is None:
                return False
        elif operator == "$options":
            continue
        else:
            raise ValueError(f"Unsupported query operator {operator!r}.")
    return True


def matches(document: Document, query: Optional[Mapping[str, Any]]) -> bool:
    """Return True when ``document`` satisfies ``query``."""
    if not query:
        return True
    for key, expected in query.items():
        if key == "$or":
            if not any(matches(document, clause) for clause in expected):
                return False
        elif key == "$and":
            if not all(matches(document, clause) for clause in expected):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported query operator {key!r}.")
        elif _is_operator_block(expected):
            if not _match_operators(document.get(key), expected):
                return False
        elif document.get(key) != expected:
            return False
    return True


def evaluate(expression: Any, document: Document) -> Any:
    """Resolve a pipeline expression against one document."""
    if isinstance(expression, str) and expression.startswith("$"):
        return document.get(expression[1:])
    if isinstance(expression, Mapping) and "$cond" in expression:
        condition, when_true, when_false = expression["$cond"]
        branch = when_true if evaluate(condition, document) else when_false
        return evaluate(branch, document)
    return expression


class _Accumulator:
    def __init__(self, operator: str, expression: Any) -> None:
        if operator not in {"$sum", "$avg", "$min", "$max"}:
            raise ValueError(f"Unsupported accumulator {operator!r}.")
        self.operator = operator
        self.expression = expression
        self.total = 0.0
        self.count = 0
        self.extreme: Any = None

    def add(self, document: Document) -> None:
        value = evaluate(self.expression, document)
        if self.operator == "$sum":
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.total += value
            return
        if value is None:
            return
        if self.operator == "$avg":
            self.total += value
            self.count += 1
        elif self.operator == "$min":
            if self.extreme is None or value < self.extreme:
                self.extreme = value
        elif self.extreme is None or value > self.extreme:
            self.extreme = value

    def result(self) -> Any:
        if self.operator == "$sum":
            return int(self.total) if float(self.total).is_integer() else self.total
        if self.operator == "$avg":
            return self.total / self.count if self.count else None
        return self.extreme


def _group_key(value: Any) -> Any:
    # Lists and dicts are not hashable; group on their repr instead.
    if isinstance(value, (list, dict)):
        return repr(value)
    return value


def _group(documents: Iterable[Document], spec: Mapping[str, Any]) -> List[Dict[str, Any]]:
    if "_id" not in spec:
        raise ValueError("$group stage requires an _id expression.")
    id_expression = spec["_id"]
    fields = {name: expr for name, expr in spec.items() if name != "_id"}

    groups: Dict[Any, tuple[Any, Dict[str, _Accumulator]]] = {}
    for document in documents:
        group_id = evaluate(id_expression, document)
        key = _group_key(group_id)
        if key not in groups:
            accumulators = {}
            for name, accumulator_spec in fields.items():
                ((operator, expression),) = accumulator_spec.items()
                accumulators[name] = _Accumulator(operator, expression)
            groups[key] = (group_id, accumulators)
        for accumulator in groups[key][1].values():
            accumulator.add(document)

    results: List[Dict[str, Any]] = []
    for group_id, accumulators in groups.values():
        row: Dict[str, Any] = {"_id": group_id}
        row.update({name: acc.result() for name, acc in accumulators.items()})
        results.append(row)
    return results


def _sort(documents: List[Dict[str, Any]], spec: Mapping[str, int]) -> List[Dict[str, Any]]:
    ordered = list(documents)
    # Stable sorts applied from the least significant key.
    for field, direction in reversed(list(spec.items())):
        ordered.sort(
            key=lambda doc, name=field: (doc.get(name) is not None, doc.get(name)),
            reverse=direction < 0,
        )
    return ordered


def run_pipeline(
    documents: Iterable[Document], pipeline: Sequence[Mapping[str, Any]]
) -> List[Dict[str, Any]]:
    """Apply an aggregation pipeline to ``documents``."""
    current: List[Dict[str, Any]] = [dict(document) for document in documents]
    for stage in pipeline:
        if len(stage) != 1:
            raise ValueError("Each pipeline stage must contain exactly one operator.")
        ((operator, spec),) = stage.items()
        if operator == "$match":
            current = [document for document in current if matches(document, spec)]
        elif operator == "$group":
            current = _group(current, spec)
        elif operator == "$sort":
            current = _sort(current, spec)
        elif operator == "$limit":
            current = current[: int(spec)]
        else:
            raise ValueError(f"Unsupported pipeline stage {operator!r}.")
    return current
