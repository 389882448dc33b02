"""Conditional node configuration and execution context models.

Condition configs form a closed tagged union on ``type``; each variant carries
only the fields it needs and rejects anything else. Payloads are validated
here, at the boundary, before they reach the engine.

Expression grammar:
    comparison  {"field": "order.total", "operator": "greater_than", "value": 100}
    logical     {"operator": "and" | "or", "conditions": [<expr>, ...]}
    negation    {"operator": "not", "condition": <expr>}
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from workflow_scheduler.constants import DEFAULT_MAX_ITERATIONS
from workflow_scheduler.models.schedule import format_datetime, parse_datetime, utcnow

Action = Dict[str, Any]


class _Frozen(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# EXPRESSIONS
# =============================================================================

class Comparison(_Frozen):
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"]
    field: str = Field(min_length=1)
    value: Any = None

    def fields(self) -> List[str]:
        return [self.field]


class LogicalGroup(_Frozen):
    operator: Literal["and", "or"]
    conditions: List["Expression"] = Field(min_length=1)

    def fields(self) -> List[str]:
        return [f for c in self.conditions for f in c.fields()]


class Negation(_Frozen):
    operator: Literal["not"]
    condition: "Expression"

    def fields(self) -> List[str]:
        return self.condition.fields()


Expression = Annotated[Union[Comparison, LogicalGroup, Negation], Field(discriminator="operator")]

LogicalGroup.model_rebuild()
Negation.model_rebuild()

expression_adapter: TypeAdapter = TypeAdapter(Expression)


def parse_expression(data: Any) -> Union[Comparison, LogicalGroup, Negation]:
    if isinstance(data, (Comparison, LogicalGroup, Negation)):
        return data
    return expression_adapter.validate_python(data)


# =============================================================================
# CONDITION CONFIGS
# =============================================================================

class IfThenElseConfig(_Frozen):
    type: Literal["if-then-else"]
    condition: Expression
    then_actions: List[Action] = Field(default_factory=list)
    else_actions: List[Action] = Field(default_factory=list)


class SwitchCase(_Frozen):
    value: Any
    actions: List[Action] = Field(default_factory=list)


class SwitchCaseConfig(_Frozen):
    type: Literal["switch-case"]
    field: str = Field(min_length=1)
    cases: List[SwitchCase] = Field(default_factory=list)
    default_actions: List[Action] = Field(default_factory=list)


class LoopWhileConfig(_Frozen):
    type: Literal["loop-while"]
    condition: Expression
    actions: List[Action] = Field(default_factory=list)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)


class LoopForConfig(_Frozen):
    type: Literal["loop-for"]
    # A literal list, or a dot path naming a list variable in the context
    items: Union[List[Any], str]
    item_variable: str = Field(min_length=1)
    actions: List[Action] = Field(default_factory=list)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)


class SimpleConditionConfig(_Frozen):
    type: Literal["simple-condition"]
    condition: Expression


ConditionConfig = Annotated[
    Union[IfThenElseConfig, SwitchCaseConfig, LoopWhileConfig, LoopForConfig, SimpleConditionConfig],
    Field(discriminator="type"),
]

condition_config_adapter: TypeAdapter = TypeAdapter(ConditionConfig)


def parse_condition_config(data: Any):
    """Validate a raw payload into one of the five condition config variants.

    Raises:
        pydantic.ValidationError: with per-field messages when the payload is malformed
    """
    if isinstance(data, BaseModel):
        return data
    return condition_config_adapter.validate_python(data)


# =============================================================================
# EXECUTION CONTEXT
# =============================================================================

@dataclass
class ExecutionContext:
    """Mutable state of one workflow run, as seen by conditional nodes.

    Owned by the run; per-iteration contexts are derived copies so loop bodies
    never leak bindings into the parent.
    """
    variables: Dict[str, Any] = field(default_factory=dict)
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    current_step_index: int = 0
    execution_start_time: datetime = field(default_factory=utcnow)
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: Optional[str] = None

    def namespace(self) -> Dict[str, Any]:
        """Lookup namespace for field paths; ``trigger.*`` reads trigger data."""
        ns = {"trigger": self.trigger_data}
        ns.update(self.variables)
        return ns

    def derive(self, **bindings: Any) -> "ExecutionContext":
        """Fresh child context with deep-copied variables plus ``bindings``."""
        variables = copy.deepcopy(self.variables)
        variables.update(bindings)
        return ExecutionContext(
            variables=variables,
            trigger_data=self.trigger_data,
            current_step_index=self.current_step_index,
            execution_start_time=self.execution_start_time,
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variables": self.variables,
            "trigger_data": self.trigger_data,
            "current_step_index": self.current_step_index,
            "execution_start_time": format_datetime(self.execution_start_time),
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExecutionContext":
        data = data or {}
        return cls(
            variables=dict(data.get("variables") or {}),
            trigger_data=dict(data.get("trigger_data") or data.get("triggerData") or {}),
            current_step_index=data.get("current_step_index", data.get("currentStepIndex", 0)),
            execution_start_time=parse_datetime(
                data.get("execution_start_time") or data.get("executionStartTime")
            ) or utcnow(),
            execution_id=data.get("execution_id") or data.get("executionId") or str(uuid.uuid4()),
            workflow_id=data.get("workflow_id") or data.get("workflowId"),
        )


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class IterationResult:
    """Outcome of one loop iteration."""
    index: int
    variables: Dict[str, Any]
    actions_result: Dict[str, Any] = field(default_factory=dict)
    item: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "item": self.item,
            "variables": self.variables,
            "actions_result": self.actions_result,
        }


@dataclass
class ConditionResult:
    """What a conditional node decided.

    ``actions`` are the actions selected for the caller to run (branching
    nodes); loops run their bodies themselves and report ``iterations``.
    """
    type: str
    condition_met: Optional[bool] = None
    branch: Optional[str] = None
    actions: List[Action] = field(default_factory=list)
    matched_case: Any = None
    iterations: List[IterationResult] = field(default_factory=list)
    stopped: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def total_iterations(self) -> int:
        return len(self.iterations)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "condition_met": self.condition_met,
            "branch": self.branch,
            "actions": self.actions,
            "timestamp": format_datetime(self.timestamp),
        }
        if self.type == "switch-case":
            data["matched_case"] = self.matched_case
        if self.type in ("loop-while", "loop-for"):
            data["total_iterations"] = self.total_iterations
            data["iterations"] = [i.to_dict() for i in self.iterations]
            data["stopped"] = self.stopped
        if self.error:
            data["error"] = self.error
        return data
