"""
Tests for the training gate evaluation rule.
"""

from ark_agent.schemas import Module
from ark_agent.training import GatePolicy, evaluate_training_gate

ACTION = "s3:CreateBucket"

MODULES = {
    "s3_basics": Module(id="1", name="s3_basics", title="S3 Basics", estimated_minutes=15),
    "data_security": Module(id="2", name="data_security", title="Data Security", estimated_minutes=30),
    "cost_awareness": Module(id="3", name="cost_awareness", title="Cost Awareness", estimated_minutes=10),
}


def test_no_policies_allows():
    decision = evaluate_training_gate(ACTION, [], MODULES, [])
    assert decision.action == "allow"
    assert decision.required_modules == []
    assert decision.message == "No training requirements for this action"


def test_policy_for_other_action_is_ignored():
    policies = [GatePolicy("training_gate", ["ec2:RunInstances"], ["s3_basics"])]
    assert evaluate_training_gate(ACTION, policies, MODULES, []).action == "allow"


def test_inactive_or_other_type_policies_are_ignored():
    policies = [
        GatePolicy("training_gate", [ACTION], ["s3_basics"], status="inactive"),
        GatePolicy("quota", [ACTION], ["data_security"]),
    ]
    assert evaluate_training_gate(ACTION, policies, MODULES, []).action == "allow"


def test_incomplete_modules_block():
    policies = [GatePolicy("training_gate", [ACTION], ["s3_basics", "data_security"])]

    decision = evaluate_training_gate(ACTION, policies, MODULES, ["s3_basics"])

    assert decision.action == "block"
    assert decision.reason == "training_required"
    assert [m.name for m in decision.required_modules] == ["data_security"]


def test_union_lists_each_module_once():
    policies = [
        GatePolicy("training_gate", [ACTION], ["s3_basics", "data_security"]),
        GatePolicy("training_gate", [ACTION, "s3:DeleteBucket"], ["data_security", "cost_awareness"]),
    ]

    decision = evaluate_training_gate(ACTION, policies, MODULES, [])

    assert [m.name for m in decision.required_modules] == [
        "s3_basics",
        "data_security",
        "cost_awareness",
    ]


def test_all_completed_allows():
    policies = [GatePolicy("training_gate", [ACTION], ["s3_basics", "data_security"])]
    decision = evaluate_training_gate(ACTION, policies, MODULES, ["data_security", "s3_basics"])
    assert decision.action == "allow"
    assert decision.message == "Training requirements met"


def test_unknown_module_names_do_not_block():
    policies = [GatePolicy("training_gate", [ACTION], ["retired_module"])]
    assert evaluate_training_gate(ACTION, policies, MODULES, []).action == "allow"
