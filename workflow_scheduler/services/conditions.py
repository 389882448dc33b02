"""Conditional node interpreter for workflow runs.

Evaluates the five conditional node types against an execution context:

- if-then-else: boolean expression selects then/else actions
- switch-case: first case whose value equals the field value wins
- loop-while: runs actions while the expression holds, capped at max_iterations
- loop-for: runs actions once per item in a fresh derived context
- simple-condition: dry-run evaluation, no actions executed

Supported operators:
- equals / not_equals: same-type equality (null compares against anything)
- contains: substring, array membership or object key
- greater_than / less_than: numbers with numbers, strings with strings
- and / or / not: logical combinators

Comparing incompatible operand types raises EvaluationTypeMismatch rather than
evaluating to false.

Expression results are memoized. The cache key is built from the expression
plus the current values of only the fields it reads, so a change to one of
those values produces a new key and the stale entry is never served.
"""

import copy
import hashlib
import json
import threading
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from readerwriterlock import rwlock

from workflow_scheduler.core.exceptions import (
    EvaluationTypeMismatch,
    LoopLimitExceeded,
    SchedulerError,
)
from workflow_scheduler.core.logging import get_logger, log_cache_operation
from workflow_scheduler.models.conditions import (
    Action,
    Comparison,
    ConditionResult,
    ExecutionContext,
    IfThenElseConfig,
    IterationResult,
    LogicalGroup,
    LoopForConfig,
    LoopWhileConfig,
    Negation,
    SimpleConditionConfig,
    SwitchCaseConfig,
    parse_condition_config,
    parse_expression,
)

logger = get_logger(__name__)


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: Dictionary to extract value from
        field_path: Dot-separated path (e.g., "order.status", "items.0.name")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"order": {"status": "paid"}}, "order.status")
        'paid'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if not data or not field_path:
        return None

    current: Any = data
    for part in field_path.split('.'):
        if current is None:
            return None

        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current


def type_category(value: Any) -> str:
    """JSON type category of a value (bool is not a number)."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _compare(operator: str, actual: Any, expected: Any, field: str) -> bool:
    """Apply a comparison operator, raising on incompatible operand types."""
    actual_type, expected_type = type_category(actual), type_category(expected)

    if operator in ("equals", "not_equals"):
        if actual is None or expected is None:
            equal = actual is None and expected is None
        elif actual_type != expected_type:
            raise EvaluationTypeMismatch(operator, actual, expected, field)
        else:
            equal = actual == expected
        return equal if operator == "equals" else not equal

    if operator in ("greater_than", "less_than"):
        if actual_type != expected_type or actual_type not in ("number", "string"):
            raise EvaluationTypeMismatch(operator, actual, expected, field)
        return actual > expected if operator == "greater_than" else actual < expected

    if operator == "contains":
        if actual_type == "string" and expected_type == "string":
            return expected in actual
        if actual_type == "array":
            return any(
                type_category(item) == expected_type and item == expected
                for item in actual
            )
        if actual_type == "object" and expected_type == "string":
            return expected in actual
        raise EvaluationTypeMismatch(operator, actual, expected, field)

    raise EvaluationTypeMismatch(operator, actual, expected, field)


class FailurePolicy(str, Enum):
    """What a workflow does when a conditional step fails."""
    STOP = "stop"          # Propagate the error, aborting the run
    CONTINUE = "continue"  # Record the error on the result and carry on
    NOTIFY = "notify"      # Like continue, and invoke the failure callback


class ActionExecutor(Protocol):
    """Runs a loop body's actions (supplied by the Execution Runner).

    Implementations may mutate ``context.variables``; loop-while threads those
    mutations into the next condition evaluation.
    """

    async def execute(self, actions: List[Action], context: ExecutionContext) -> Dict[str, Any]:
        ...


class RecordingActionExecutor:
    """Default executor: reports the actions as executed without side effects."""

    async def execute(self, actions: List[Action], context: ExecutionContext) -> Dict[str, Any]:
        return {
            "executed": [a.get("type") or a.get("id") for a in actions],
            "count": len(actions),
        }


# Operator metadata for frontend UI
OPERATORS = {
    "equals": {"label": "Equals", "description": "Value equals target", "requires_value": True},
    "not_equals": {"label": "Not Equals", "description": "Value does not equal target", "requires_value": True},
    "contains": {"label": "Contains", "description": "String/list contains value, or object has key", "requires_value": True},
    "greater_than": {"label": "Greater Than", "description": "Value is greater than target", "requires_value": True},
    "less_than": {"label": "Less Than", "description": "Value is less than target", "requires_value": True},
    "and": {"label": "And", "description": "All nested conditions hold", "requires_value": False},
    "or": {"label": "Or", "description": "At least one nested condition holds", "requires_value": False},
    "not": {"label": "Not", "description": "Nested condition does not hold", "requires_value": False},
}


def get_available_operators() -> Dict[str, Dict[str, Any]]:
    """Get operator metadata for frontend UI."""
    return copy.deepcopy(OPERATORS)


Expr = Union[Comparison, LogicalGroup, Negation]


class ConditionalEngine:
    """Interprets conditional/loop nodes with a shared memoization cache.

    The cache is shared by concurrently running executions. Lookups vastly
    outnumber writes, so it is guarded by a reader/writer lock.
    """

    def __init__(self, action_executor: Optional[ActionExecutor] = None,
                 max_cache_entries: int = 10_000,
                 on_step_failure: Optional[Callable[[str, SchedulerError, ExecutionContext], Any]] = None):
        self.action_executor = action_executor or RecordingActionExecutor()
        self.max_cache_entries = max_cache_entries
        self.on_step_failure = on_step_failure

        self._cache: "OrderedDict[str, bool]" = OrderedDict()
        self._cache_lock = rwlock.RWLockRead()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # =========================================================================
    # EXPRESSIONS
    # =========================================================================

    def evaluate_expression(self, expression: Any, context: ExecutionContext) -> bool:
        """Evaluate a condition expression, consulting the cache first."""
        expr = parse_expression(expression)
        namespace = context.namespace()
        captured = [[path, get_nested_value(namespace, path)] for path in sorted(set(expr.fields()))]
        key = self._cache_key(expr, captured)

        with self._cache_lock.gen_rlock():
            cached = self._cache.get(key)

        if cached is not None:
            self._count(hit=True)
            log_cache_operation(logger, "get", key, hit=True)
            return cached

        self._count(hit=False)
        log_cache_operation(logger, "get", key, hit=False)

        result = self._evaluate_node(expr, namespace)

        with self._cache_lock.gen_wlock():
            self._cache[key] = result
            while len(self._cache) > self.max_cache_entries:
                self._cache.popitem(last=False)

        return result

    def _evaluate_node(self, expr: Expr, namespace: Dict[str, Any]) -> bool:
        if isinstance(expr, Comparison):
            actual = get_nested_value(namespace, expr.field)
            return _compare(expr.operator, actual, expr.value, expr.field)

        if isinstance(expr, Negation):
            return not self._evaluate_node(expr.condition, namespace)

        if expr.operator == "and":
            return all(self._evaluate_node(c, namespace) for c in expr.conditions)
        return any(self._evaluate_node(c, namespace) for c in expr.conditions)

    @staticmethod
    def _cache_key(expr: Expr, captured: List[List[Any]]) -> str:
        signature = expr.model_dump_json(by_alias=False)
        values = json.dumps(captured, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(f"{signature}|{values}".encode()).hexdigest()

    def _count(self, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    # =========================================================================
    # CONDITIONAL NODES
    # =========================================================================

    async def evaluate(self, config: Any, context: ExecutionContext) -> ConditionResult:
        """Evaluate a conditional node.

        Args:
            config: ConditionConfig variant (or raw payload, validated here)
            context: Execution context of the current run

        Returns:
            ConditionResult describing the selected branch or loop iterations

        Raises:
            EvaluationTypeMismatch: incompatible operand types in a comparison
            LoopLimitExceeded: a loop hit its max_iterations cap
        """
        config = parse_condition_config(config)

        if isinstance(config, IfThenElseConfig):
            met = self.evaluate_expression(config.condition, context)
            return ConditionResult(
                type=config.type,
                condition_met=met,
                branch="then" if met else "else",
                actions=list(config.then_actions if met else config.else_actions),
            )

        if isinstance(config, SwitchCaseConfig):
            return self._evaluate_switch(config, context)

        if isinstance(config, LoopWhileConfig):
            return await self._run_while(config, context)

        if isinstance(config, LoopForConfig):
            return await self._run_for(config, context)

        if isinstance(config, SimpleConditionConfig):
            met = self.evaluate_expression(config.condition, context)
            return ConditionResult(
                type=config.type,
                condition_met=met,
                branch="then" if met else "else",
            )

        raise TypeError(f"Unsupported condition config: {type(config).__name__}")

    def _evaluate_switch(self, config: SwitchCaseConfig, context: ExecutionContext) -> ConditionResult:
        value = get_nested_value(context.namespace(), config.field)
        category = type_category(value)

        for case in config.cases:
            if type_category(case.value) == category and case.value == value:
                return ConditionResult(
                    type=config.type,
                    condition_met=True,
                    branch="case",
                    actions=list(case.actions),
                    matched_case=case.value,
                )

        return ConditionResult(
            type=config.type,
            condition_met=False,
            branch="default",
            actions=list(config.default_actions),
        )

    async def _run_while(self, config: LoopWhileConfig, context: ExecutionContext) -> ConditionResult:
        iterations: List[IterationResult] = []

        while self.evaluate_expression(config.condition, context):
            if len(iterations) >= config.max_iterations:
                logger.warning("Loop iteration limit reached",
                               execution_id=context.execution_id,
                               max_iterations=config.max_iterations)
                raise LoopLimitExceeded(config.max_iterations)

            context.current_step_index = len(iterations)
            actions_result = await self.action_executor.execute(list(config.actions), context)
            iterations.append(IterationResult(
                index=len(iterations),
                variables=copy.deepcopy(context.variables),
                actions_result=actions_result or {},
            ))

        return ConditionResult(
            type=config.type,
            condition_met=bool(iterations),
            iterations=iterations,
            stopped="condition_false",
        )

    async def _run_for(self, config: LoopForConfig, context: ExecutionContext) -> ConditionResult:
        items = config.items
        if isinstance(items, str):
            resolved = get_nested_value(context.namespace(), items)
            if not isinstance(resolved, (list, tuple)):
                raise EvaluationTypeMismatch("loop-for", resolved, [], field=items)
            items = list(resolved)

        if len(items) > config.max_iterations:
            raise LoopLimitExceeded(config.max_iterations)

        iterations: List[IterationResult] = []
        for index, item in enumerate(items):
            child = context.derive(**{config.item_variable: item})
            child.current_step_index = index
            actions_result = await self.action_executor.execute(list(config.actions), child)
            iterations.append(IterationResult(
                index=index,
                variables=child.variables,
                actions_result=actions_result or {},
                item=item,
            ))

        return ConditionResult(
            type=config.type,
            condition_met=bool(iterations),
            iterations=iterations,
            stopped="completed",
        )

    async def evaluate_step(self, config: Any, context: ExecutionContext,
                            failure_policy: FailurePolicy = FailurePolicy.STOP) -> ConditionResult:
        """Evaluate a conditional node as a workflow step.

        An evaluation error aborts only this step. With STOP it propagates to
        the caller; otherwise it is recorded on the returned result.
        """
        config = parse_condition_config(config)
        try:
            return await self.evaluate(config, context)
        except SchedulerError as e:
            logger.warning("Conditional step failed",
                           execution_id=context.execution_id,
                           condition_type=config.type,
                           policy=failure_policy.value,
                           error=e.message)
            if failure_policy == FailurePolicy.STOP:
                raise
            if failure_policy == FailurePolicy.NOTIFY and self.on_step_failure:
                self.on_step_failure(config.type, e, context)
            return ConditionResult(type=config.type, error=e.message)

    # =========================================================================
    # CACHE ADMINISTRATION
    # =========================================================================

    def cache_stats(self) -> Dict[str, Any]:
        with self._cache_lock.gen_rlock():
            size = len(self._cache)
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "size": size,
            "total_requests": total,
            "hit_rate": round(hits / total * 100, 2) if total else 0.0,
        }

    def clear_cache(self) -> int:
        """Drop all cached results and reset counters. Returns entries removed."""
        with self._cache_lock.gen_wlock():
            removed = len(self._cache)
            self._cache.clear()
        with self._stats_lock:
            self._hits = 0
            self._misses = 0
        logger.info("Condition cache cleared", entries=removed)
        return removed

    def get_available_operators(self) -> Dict[str, Dict[str, Any]]:
        return get_available_operators()
