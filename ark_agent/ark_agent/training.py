"""
Training gate evaluation rule.

The backend owns policy evaluation; this module states its contract in code
so the agent's behaviour can be tested against a faithful backend double.
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ark_agent.schemas import Module, PolicyDecision

TRAINING_GATE = "training_gate"


@dataclass
class GatePolicy:
    """A stored policy, reduced to what evaluation needs."""

    policy_type: str
    actions: list[str]
    required_modules: list[str]
    status: str = "active"
    name: str = field(default="")

    def applies_to(self, action: str) -> bool:
        return (
            self.policy_type == TRAINING_GATE
            and self.status == "active"
            and action in self.actions
        )


def evaluate_training_gate(
    action: str,
    policies: Iterable[GatePolicy],
    modules: Mapping[str, Module],
    completed: Iterable[str],
) -> PolicyDecision:
    """
    Decide whether a user may perform action.

    The required module names of all active training-gate policies naming
    the action are unioned. If that set is empty, or every module in it is
    in completed, the action is allowed. Otherwise it is blocked and the
    incomplete modules are returned, each once, in first-required order.

    Args:
        action: Action being attempted, e.g. "s3:CreateBucket"
        policies: All stored policies
        modules: Known training modules by name
        completed: Names of modules the user has completed

    Returns:
        PolicyDecision
    """
    required: list[str] = []
    for policy in policies:
        if not policy.applies_to(action):
            continue
        for name in policy.required_modules:
            if name not in required:
                required.append(name)

    if not required:
        return PolicyDecision(
            action="allow", message="No training requirements for this action"
        )

    done = set(completed)
    incomplete = [modules[name] for name in required if name not in done and name in modules]

    if incomplete:
        return PolicyDecision(
            action="block",
            reason="training_required",
            required_modules=incomplete,
            message="Complete required training modules to perform this operation",
        )

    return PolicyDecision(action="allow", message="Training requirements met")
