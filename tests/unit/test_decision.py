"""Decision engine: pure next-step selection."""

from cadence.decision import DecisionEngine, FlowRef, StepRef, Suspend, Terminal
from cadence.definitions import DefinitionRegistry
from cadence.persistence import InstanceStatus, StepRecord, WorkflowInstance

ROUTED = {
    "name": "routed",
    "inputs": ["prospect_email"],
    "steps": [
        {"name": "classify", "capability": "classify_reply", "outputs": ["sentiment", "hot"]},
        {"name": "decide", "capability": "decide_action", "outputs": ["action"]},
        {"name": "send", "capability": "send_email"},
        {"name": "nurture", "capability": "enroll_sequence"},
    ],
    "flows": {"main": ["classify", "decide", "send"], "nurture": ["nurture"]},
    "triggers": [{"event": "lead_went_cold", "flow": "nurture"}],
}


def _definition(**step_patch):
    data = {**ROUTED, "steps": [dict(s) for s in ROUTED["steps"]]}
    data["steps"][0].update(step_patch)
    return DefinitionRegistry().load(data)


def _instance(outputs=None, **kwargs):
    steps = [
        StepRecord(step_name=name, seq=i + 1, output=output)
        for i, (name, output) in enumerate((outputs or {}).items())
    ]
    return WorkflowInstance(id="i-1", workflow_name="routed", steps=steps, **kwargs)


def test_sequence_and_completion():
    engine = DecisionEngine()
    defn = _definition()
    inst = _instance()

    assert engine.next_step(inst, defn) == StepRef(name="classify")
    assert engine.next_step(inst, defn, "classify") == StepRef(name="decide")
    assert engine.next_step(inst, defn, "send") == Terminal()


def test_branches_first_match_then_default():
    branches = [
        {"when": {"kind": "compare", "field": "classify.sentiment", "value": "unsubscribe"}, "goto": "end"},
        {"when": {"kind": "in", "field": "classify.sentiment", "values": ["neutral", "negative"]}, "goto": {"flow": "nurture"}},
        {"when": {"kind": "compare", "field": "classify.sentiment", "value": "negative"}, "goto": "suspend"},
    ]
    engine = DecisionEngine()
    defn = _definition(branches=branches, default={"step": "send"})

    def decide(sentiment):
        inst = _instance({"classify": {"sentiment": sentiment}}, current_step="classify")
        return engine.next_step(inst, defn, "classify")

    assert decide("unsubscribe") == Terminal()
    assert decide("negative") == FlowRef(name="nurture")
    assert decide("positive") == StepRef(name="send")


def test_same_inputs_same_decision():
    engine = DecisionEngine()
    defn = _definition(
        branches=[{"when": {"kind": "flag", "field": "classify.hot"}, "goto": {"step": "send"}}],
        default={"step": "decide"},
    )
    inst = _instance({"classify": {"sentiment": "positive", "hot": True}})
    decisions = {engine.next_step(inst, defn, "classify") for _ in range(5)}
    assert decisions == {StepRef(name="send")}


def test_pending_flow_preempts_and_terminal_is_sticky():
    engine = DecisionEngine()
    defn = _definition()

    pending = _instance(pending_flows=["nurture"])
    assert engine.next_step(pending, defn, "classify") == FlowRef(name="nurture", pending=True)

    stopped = _instance(status=InstanceStatus.STOPPED, failure_reason="AutoStop")
    assert engine.next_step(stopped, defn, "classify") == Terminal(
        status=InstanceStatus.STOPPED, reason="AutoStop"
    )


def test_reactive_flow_suspends_at_end():
    engine = DecisionEngine()
    defn = DefinitionRegistry().load({**ROUTED, "mode": "reactive"})
    inst = _instance(current_flow="nurture")
    decision = engine.next_step(inst, defn, "nurture")
    assert isinstance(decision, Suspend)
