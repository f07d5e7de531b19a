"""
Publication Approvals — Workflow Definition

Loads and validates the declarative state machine the orchestrator
runs. The definition is configuration: states reference step
implementations by logical name, and the orchestrator resolves them
through a StepRegistry at load time.

State types:
  task             run a step, merge its output into the context
  choice           branch on a context variable
  wait_for_resume  run a step (typically attaching the resume token),
                   then suspend until ResumeWorkflow is called
                   unless the step raises ResumeTokenConflict and the
                   state names an ``on_conflict`` target
  succeed / fail   terminal; emits EvaluationCompleted with ``result``
  reject           terminal; entity did not qualify, carries ``reason``

Usage:
    defn = load_definition("approvals/workflows/publication_approval.yaml")
    validate_definition(defn, registry.names())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from approvals.types import DefinitionError

STEP_STATES = {"task", "wait_for_resume"}
TERMINAL_STATES = {"succeed", "fail", "reject"}
VALID_STATE_TYPES = STEP_STATES | TERMINAL_STATES | {"choice"}

_DEFAULT_RESULTS = {"succeed": "PASS", "fail": "FAIL", "reject": "FAIL"}


@dataclass
class ChoiceRule:
    variable: str
    equals: Any
    next: str

    def matches(self, data: dict[str, Any]) -> bool:
        return resolve_variable(self.variable, data) == self.equals


@dataclass
class StateDef:
    name: str
    type: str
    step: str = ""
    next: str = ""
    choices: list[ChoiceRule] = field(default_factory=list)
    default: str = ""
    on_conflict: str = ""
    result: str = ""
    reason: str = ""
    comment: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_STATES


@dataclass
class WorkflowDefinition:
    name: str
    start_at: str
    states: dict[str, StateDef]
    version: int = 1
    description: str = ""
    source: str = ""

    def state(self, name: str) -> StateDef:
        try:
            return self.states[name]
        except KeyError:
            raise DefinitionError(f"{self.name}: no state named {name!r}") from None


def resolve_variable(path: str, data: dict[str, Any]) -> Any:
    """Dotted lookup into the step context; missing keys resolve to None."""
    current: Any = data
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


# ═══════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════

def parse_definition(raw: dict[str, Any], source: str = "<dict>") -> WorkflowDefinition:
    """Build a WorkflowDefinition from parsed YAML. Raises DefinitionError."""
    if not isinstance(raw, dict):
        raise DefinitionError(f"{source}: definition must be a mapping")
    for key in ("name", "start_at", "states"):
        if key not in raw:
            raise DefinitionError(f"{source}: missing required field {key!r}")
    if not isinstance(raw["states"], dict) or not raw["states"]:
        raise DefinitionError(f"{source}: 'states' must be a non-empty mapping")

    states: dict[str, StateDef] = {}
    for name, body in raw["states"].items():
        if not isinstance(body, dict):
            raise DefinitionError(f"{source}: state {name!r} must be a mapping")
        stype = body.get("type", "")
        if stype not in VALID_STATE_TYPES:
            raise DefinitionError(
                f"{source}: state {name!r} has invalid type {stype!r} "
                f"(expected one of {sorted(VALID_STATE_TYPES)})"
            )
        choices = []
        for rule in body.get("choices", []) or []:
            try:
                choices.append(ChoiceRule(rule["variable"], rule.get("equals"), rule["next"]))
            except (KeyError, TypeError):
                raise DefinitionError(
                    f"{source}: state {name!r} has a malformed choice rule: {rule!r}"
                ) from None
        states[name] = StateDef(
            name=name,
            type=stype,
            step=body.get("step", ""),
            next=body.get("next", ""),
            choices=choices,
            default=body.get("default", ""),
            on_conflict=body.get("on_conflict", ""),
            result=body.get("result", _DEFAULT_RESULTS.get(stype, "")),
            reason=body.get("reason", ""),
            comment=body.get("comment", ""),
        )

    return WorkflowDefinition(
        name=raw["name"],
        start_at=raw["start_at"],
        states=states,
        version=int(raw.get("version", 1)),
        description=raw.get("description", ""),
        source=source,
    )


def load_definition(path: str | Path) -> WorkflowDefinition:
    path = Path(path)
    if not path.exists():
        raise DefinitionError(f"Workflow definition not found: {path}")
    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise DefinitionError(f"{path}: invalid YAML: {e}") from e
    return parse_definition(raw, source=str(path))


# ═══════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════

def definition_issues(defn: WorkflowDefinition, step_names: set[str] | list[str]) -> list[str]:
    """Cross-reference checks. Returns a list of problems (empty when valid)."""
    known_steps = set(step_names)
    issues: list[str] = []

    if defn.start_at not in defn.states:
        issues.append(f"start_at {defn.start_at!r} is not a state")

    for s in defn.states.values():
        where = f"state {s.name!r}"
        if s.type in STEP_STATES:
            if not s.step:
                issues.append(f"{where}: {s.type} requires 'step'")
            elif s.step not in known_steps:
                issues.append(f"{where}: unknown step {s.step!r}")
            if not s.next:
                issues.append(f"{where}: {s.type} requires 'next'")
        if s.type == "choice":
            if not s.choices:
                issues.append(f"{where}: choice requires at least one rule")
            if not s.default:
                issues.append(f"{where}: choice requires 'default'")
        if s.on_conflict and s.type != "wait_for_resume":
            issues.append(f"{where}: on_conflict is only valid on wait_for_resume")
        if s.is_terminal and s.result not in ("PASS", "FAIL"):
            issues.append(f"{where}: result must be PASS or FAIL, got {s.result!r}")

        targets = [s.next] if s.next else []
        targets += [c.next for c in s.choices]
        if s.default:
            targets.append(s.default)
        if s.on_conflict:
            targets.append(s.on_conflict)
        for t in targets:
            if t not in defn.states:
                issues.append(f"{where}: transition to unknown state {t!r}")

    if not any(s.is_terminal for s in defn.states.values()):
        issues.append("definition has no terminal state")
    return issues


def validate_definition(defn: WorkflowDefinition, step_names: set[str] | list[str]) -> None:
    issues = definition_issues(defn, step_names)
    if issues:
        raise DefinitionError(f"{defn.source or defn.name}: " + "; ".join(issues))
