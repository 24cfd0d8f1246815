"""Load-time structural checks for workflow definitions.

Everything here is pure: a definition either passes or a ``ValidationError``
names the offending step, flow, trigger or rule.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..errors import ValidationError
from .models import RESERVED_STEP_NAMES, BranchTarget, StepDefinition, WorkflowDefinition

ROOT = "<start>"


def _fail(defn: WorkflowDefinition, location: str, message: str) -> ValidationError:
    return ValidationError(defn.name, location, message)


def _targets(step: StepDefinition) -> list[BranchTarget]:
    targets = [b.goto for b in step.branches]
    if step.default is not None:
        targets.append(step.default)
    return targets


def _check_names(defn: WorkflowDefinition) -> None:
    seen: set[str] = set()
    for step in defn.steps:
        if step.name in RESERVED_STEP_NAMES:
            raise _fail(defn, f"steps.{step.name}", "step name is reserved")
        if step.name in seen:
            raise _fail(defn, f"steps.{step.name}", "duplicate step name")
        seen.add(step.name)


def _check_flows(defn: WorkflowDefinition) -> None:
    owner: dict[str, str] = {}
    for flow, members in defn.flows.items():
        if not members:
            raise _fail(defn, f"flows.{flow}", "flow has no steps")
        for name in members:
            if not defn.has_step(name):
                raise _fail(defn, f"flows.{flow}", f"unknown step '{name}'")
            if name in owner:
                raise _fail(
                    defn,
                    f"flows.{flow}",
                    f"step '{name}' already belongs to flow '{owner[name]}'",
                )
            owner[name] = flow
    for step in defn.steps:
        if step.name not in owner:
            raise _fail(defn, f"steps.{step.name}", "step is not part of any flow")
    if defn.entry not in defn.flows:
        raise _fail(defn, "entry", f"unknown flow '{defn.entry}'")


def _check_branches(defn: WorkflowDefinition) -> None:
    for step in defn.steps:
        location = f"steps.{step.name}"
        if step.branches and step.default is None:
            raise _fail(defn, location, "branches need a default target")
        flow = defn.flow_of(step.name)
        members = defn.flows[flow]
        for target in _targets(step):
            if target.step is not None:
                if target.step not in members:
                    raise _fail(
                        defn, location, f"goto step '{target.step}' is not in flow '{flow}'"
                    )
                if members.index(target.step) <= members.index(step.name):
                    raise _fail(
                        defn, location, f"goto step '{target.step}' does not move forward"
                    )
            if target.flow is not None and target.flow not in defn.flows:
                raise _fail(defn, location, f"goto flow '{target.flow}' is not defined")


def _check_flow_cycles(defn: WorkflowDefinition) -> None:
    edges: dict[str, set[str]] = {flow: set() for flow in defn.flows}
    for step in defn.steps:
        for target in _targets(step):
            if target.flow is not None:
                edges[defn.flow_of(step.name)].add(target.flow)

    visiting: set[str] = set()
    done: set[str] = set()

    def visit(flow: str, path: list[str]) -> None:
        if flow in done:
            return
        if flow in visiting:
            cycle = " -> ".join(path[path.index(flow):] + [flow])
            raise _fail(defn, f"flows.{flow}", f"cyclic flow transition: {cycle}")
        visiting.add(flow)
        for nxt in sorted(edges[flow]):
            visit(nxt, path + [flow])
        visiting.discard(flow)
        done.add(flow)

    for flow in sorted(defn.flows):
        visit(flow, [])


def _step_graph(defn: WorkflowDefinition) -> dict[str, set[str]]:
    """Predecessors of every step, with ``ROOT`` for flow entry points."""
    preds: dict[str, set[str]] = {s.name: set() for s in defn.steps}
    entries = {defn.entry} | {t.flow for t in defn.triggers}
    for flow in entries:
        preds[defn.first_step(flow)].add(ROOT)
    for step in defn.steps:
        if step.branches or step.default is not None:
            successors = []
            for target in _targets(step):
                if target.step is not None:
                    successors.append(target.step)
                elif target.flow is not None:
                    successors.append(defn.first_step(target.flow))
        else:
            nxt = defn.step_after(step.name)
            successors = [nxt] if nxt else []
        for succ in successors:
            preds[succ].add(step.name)
    return preds


def dominators(defn: WorkflowDefinition) -> dict[str, set[str]]:
    """Steps that run before each step on every path from a flow entry.

    The step graph is acyclic once flow cycles and backward jumps are
    rejected, so a single pass in topological order is exact.
    """
    preds = _step_graph(defn)
    order: list[str] = []
    remaining = {name: set(p) - {ROOT} for name, p in preds.items()}
    ready = sorted(name for name, p in remaining.items() if not p)
    while ready:
        name = ready.pop(0)
        order.append(name)
        for other, p in remaining.items():
            if name in p:
                p.discard(name)
                if not p and other not in order and other not in ready:
                    ready.append(other)
        ready.sort()

    doms: dict[str, set[str]] = {}
    for name in order:
        if not preds[name]:
            raise _fail(defn, f"steps.{name}", "step is unreachable")
        incoming = [({ROOT} if p == ROOT else doms[p]) for p in preds[name]]
        doms[name] = set.intersection(*incoming) | {name}
    return doms


def _check_reference(
    defn: WorkflowDefinition,
    location: str,
    path: str,
    visible: Optional[Iterable[str]] = None,
) -> None:
    """Reject a field path that can never resolve.

    ``visible`` restricts step references to the given steps (those that
    have run on every path to the consumer). ``None`` only checks existence.
    """
    head, _, rest = path.partition(".")
    if head == "inputs":
        name = rest.split(".")[0]
        if not name or name not in defn.inputs:
            raise _fail(defn, location, f"'{path}' references undeclared workflow input")
        return
    if head == "events":
        event = rest.split(".")[0]
        if event not in {t.event for t in defn.triggers}:
            raise _fail(defn, location, f"'{path}' references an event no trigger receives")
        return
    if not defn.has_step(head):
        raise _fail(defn, location, f"'{path}' references unknown step '{head}'")
    if visible is not None and head not in visible:
        raise _fail(
            defn, location, f"'{path}' references step '{head}' that does not always run first"
        )
    field = rest.split(".")[0]
    if field and field not in defn.step(head).outputs:
        raise _fail(defn, location, f"'{path}' references undeclared output of step '{head}'")


def _check_references(defn: WorkflowDefinition) -> None:
    doms = dominators(defn)
    for step in defn.steps:
        before = doms[step.name] - {ROOT, step.name}
        for input_name, binding in step.inputs.items():
            if binding.ref is not None:
                _check_reference(
                    defn, f"steps.{step.name}.inputs.{input_name}", binding.ref, before
                )
        for index, branch in enumerate(step.branches):
            for path in branch.when.field_paths():
                _check_reference(
                    defn, f"steps.{step.name}.branches[{index}]", path, before | {step.name}
                )
        for gate in step.quality_gates:
            field = gate.field.split(".")[0]
            if step.outputs and field not in step.outputs:
                raise _fail(
                    defn,
                    f"steps.{step.name}.quality_gates",
                    f"'{gate.field}' is not a declared output",
                )


def _check_triggers(defn: WorkflowDefinition) -> None:
    for index, trigger in enumerate(defn.triggers):
        location = f"triggers[{index}]"
        if trigger.flow not in defn.flows:
            raise _fail(defn, location, f"trigger '{trigger.event}' bound to undefined flow '{trigger.flow}'")
        if trigger.action == "resume" and defn.correlation is None:
            raise _fail(defn, location, "resume triggers need a workflow 'correlation' field")
        if trigger.when is not None:
            for path in trigger.when.field_paths():
                _check_reference(defn, location, path)
    if defn.correlation is not None:
        head, _, name = defn.correlation.partition(".")
        if head != "inputs" or name not in defn.inputs:
            raise _fail(defn, "correlation", "correlation must reference a declared workflow input")


def _check_guardrails(defn: WorkflowDefinition) -> None:
    names: set[str] = set()
    for rule in defn.guardrails:
        location = f"guardrails.{rule.name}"
        if rule.name in names:
            raise _fail(defn, location, "duplicate guardrail name")
        names.add(rule.name)
        for step_name in rule.steps:
            if not defn.has_step(step_name):
                raise _fail(defn, location, f"unknown step '{step_name}'")
        for path in rule.field_paths():
            _check_reference(defn, location, path)


def validate_definition(defn: WorkflowDefinition) -> None:
    """Raise ``ValidationError`` for the first structural problem found."""
    _check_names(defn)
    _check_flows(defn)
    _check_branches(defn)
    _check_flow_cycles(defn)
    _check_triggers(defn)
    _check_references(defn)
    _check_guardrails(defn)
