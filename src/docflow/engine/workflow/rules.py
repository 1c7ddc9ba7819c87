"""Rule evaluation: condition gates and loop iteration.

Condition rules decide whether a step executes; all condition rules on a step
must pass. A loop rule decides how many times the step's task is dispatched.

Neither kind of rule ever raises into the runner. An unresolved field makes a
condition fail closed, and a loop that hits `maxIterations` is truncated. Both
are reported as warnings through the `on_warning` callback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sized
from dataclasses import dataclass
from typing import Any

from docflow.engine.errors import (
    ConditionFieldUnresolvedWarning,
    EngineWarning,
    LoopTruncatedWarning,
)

from .expressions import ExpressionError, evaluate_condition
from .models import ConditionOperator, ConditionRule, LoopRule, LoopType, WorkflowRule

logger = logging.getLogger(__name__)

WarningCallback = Callable[[EngineWarning], None]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def resolve_path(context: Any, path: str) -> Any:
    """Resolve a dotted path (`document.owner.name`, `items.0`) in `context`.

    Returns `MISSING` when any segment cannot be resolved.
    """

    current = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list | tuple) and part.lstrip("-").isdigit():
            try:
                current = current[int(part)]
            except IndexError:
                return MISSING
        elif not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_collection(value: Any) -> bool:
    return isinstance(value, list | tuple | set | frozenset | Mapping)


def _loose_equals(actual: Any, expected: Any) -> bool:
    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None:
        return a == b
    if _is_collection(actual) or _is_collection(expected):
        return bool(actual == expected)
    return _as_text(actual) == _as_text(expected)


def _compare(actual: Any, expected: Any) -> int:
    a, b = _as_number(actual), _as_number(expected)
    if a is None or b is None:
        left, right = _as_text(actual), _as_text(expected)
    else:
        left, right = a, b
    return (left > right) - (left < right)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, Sized):
        return len(value) == 0
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list | tuple | set | frozenset):
        return any(_loose_equals(item, expected) for item in actual)
    if isinstance(actual, Mapping):
        return _as_text(expected) in actual
    return _as_text(expected) in _as_text(actual)


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _loose_equals,
    ConditionOperator.NOT_EQUALS: lambda a, b: not _loose_equals(a, b),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, b: not _contains(a, b),
    ConditionOperator.GREATER_THAN: lambda a, b: _compare(a, b) > 0,
    ConditionOperator.LESS_THAN: lambda a, b: _compare(a, b) < 0,
    ConditionOperator.STARTS_WITH: lambda a, b: _as_text(a).startswith(_as_text(b)),
    ConditionOperator.ENDS_WITH: lambda a, b: _as_text(a).endswith(_as_text(b)),
    ConditionOperator.IS_EMPTY: lambda a, _b: _is_empty(a),
    ConditionOperator.IS_NOT_EMPTY: lambda a, _b: not _is_empty(a),
}


@dataclass(frozen=True, slots=True)
class LoopIteration:
    """One pass of a looped step.

    `context` is the run context at the time the iteration was produced,
    overlaid with `loop = {index, iteration, item?}` (and `item` for for_each).
    """

    index: int
    context: dict[str, Any]
    item: Any = None


class RuleEvaluator:
    def __init__(self, on_warning: WarningCallback | None = None) -> None:
        self._on_warning = on_warning

    def evaluate(
        self,
        rule: ConditionRule,
        context: Mapping[str, Any],
        *,
        step_id: str | None = None,
        on_warning: WarningCallback | None = None,
    ) -> bool:
        settings = rule.settings
        actual = resolve_path(context, settings.field)
        if actual is MISSING:
            self._warn(
                ConditionFieldUnresolvedWarning(
                    f"Condition field '{settings.field}' not found in context; "
                    f"rule '{rule.id}' evaluates to false",
                    step_id=step_id,
                ),
                on_warning,
            )
            return False
        return _OPERATORS[settings.operator](actual, settings.value)

    def evaluate_all(
        self,
        rules: Iterable[WorkflowRule],
        context: Mapping[str, Any],
        *,
        step_id: str | None = None,
        on_warning: WarningCallback | None = None,
    ) -> bool:
        for rule in rules:
            if not isinstance(rule, ConditionRule):
                continue
            if not self.evaluate(rule, context, step_id=step_id, on_warning=on_warning):
                return False
        return True

    def iterate(
        self,
        rule: LoopRule,
        context: Mapping[str, Any],
        *,
        step_id: str | None = None,
        on_warning: WarningCallback | None = None,
    ) -> Iterator[LoopIteration]:
        """Yield one `LoopIteration` per pass, lazily.

        `context` should be the live run context: while/do_while conditions are
        re-evaluated against it between iterations, so outputs merged by the
        previous pass are visible.
        """

        settings = rule.settings
        if settings.loop_type == LoopType.FOR_EACH:
            yield from self._for_each(rule, context, step_id, on_warning)
            return

        limit = settings.max_iterations
        index = 0
        if settings.loop_type == LoopType.WHILE:
            while self._loop_condition(rule, context, step_id, on_warning):
                if index >= limit:
                    self._truncated(rule, limit, step_id, on_warning)
                    return
                yield LoopIteration(index=index, context=_iteration_context(context, index))
                index += 1
            return

        # do_while: body first, condition after each pass.
        while True:
            yield LoopIteration(index=index, context=_iteration_context(context, index))
            index += 1
            if not self._loop_condition(rule, context, step_id, on_warning):
                return
            if index >= limit:
                self._truncated(rule, limit, step_id, on_warning)
                return

    def _for_each(
        self,
        rule: LoopRule,
        context: Mapping[str, Any],
        step_id: str | None,
        on_warning: WarningCallback | None,
    ) -> Iterator[LoopIteration]:
        path = rule.settings.loop_condition
        collection = resolve_path(context, path)
        if collection is MISSING:
            self._warn(
                ConditionFieldUnresolvedWarning(
                    f"Loop collection '{path}' not found in context; step runs zero times",
                    step_id=step_id,
                ),
                on_warning,
            )
            return

        if isinstance(collection, Mapping):
            items = [{"key": k, "value": v} for k, v in collection.items()]
        elif isinstance(collection, list | tuple | set | frozenset):
            items = list(collection)
        else:
            self._warn(
                ConditionFieldUnresolvedWarning(
                    f"Loop collection '{path}' is not a collection "
                    f"({type(collection).__name__}); step runs zero times",
                    step_id=step_id,
                ),
                on_warning,
            )
            return

        limit = rule.settings.max_iterations
        for index, item in enumerate(items[:limit]):
            yield LoopIteration(
                index=index,
                context=_iteration_context(context, index, item=item, with_item=True),
                item=item,
            )
        if len(items) > limit:
            self._truncated(rule, limit, step_id, on_warning, total=len(items))

    def _loop_condition(
        self,
        rule: LoopRule,
        context: Mapping[str, Any],
        step_id: str | None,
        on_warning: WarningCallback | None,
    ) -> bool:
        expression = rule.settings.loop_condition
        try:
            return evaluate_condition(expression, context)
        except ExpressionError as e:
            self._warn(
                ConditionFieldUnresolvedWarning(
                    f"Loop condition '{expression}' could not be evaluated ({e}); stopping loop",
                    step_id=step_id,
                ),
                on_warning,
            )
            return False

    def _truncated(
        self,
        rule: LoopRule,
        limit: int,
        step_id: str | None,
        on_warning: WarningCallback | None,
        *,
        total: int | None = None,
    ) -> None:
        detail = f" of {total}" if total is not None else ""
        self._warn(
            LoopTruncatedWarning(
                f"Loop truncated after {limit}{detail} iterations (maxIterations={limit})",
                step_id=step_id,
            ),
            on_warning,
        )

    def _warn(self, warning: EngineWarning, on_warning: WarningCallback | None) -> None:
        logger.warning(
            warning.message,
            extra={"step_id": warning.step_id, "warning": type(warning).__name__},
        )
        callback = on_warning or self._on_warning
        if callback is not None:
            callback(warning)


def _iteration_context(
    context: Mapping[str, Any], index: int, *, item: Any = None, with_item: bool = False
) -> dict[str, Any]:
    ctx = dict(context)
    loop: dict[str, Any] = {"index": index, "iteration": index + 1}
    if with_item:
        loop["item"] = item
        ctx["item"] = item
    ctx["loop"] = loop
    return ctx
