from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import assert_never

from .models import OutcomeActionName, OutcomeRule


@dataclass(frozen=True, slots=True)
class Continue:
    """Activate the next deliverable in the same stage, if any."""


@dataclass(frozen=True, slots=True)
class SkipToDeliverable:
    target_id: str | None


@dataclass(frozen=True, slots=True)
class SkipToStage:
    target_id: str | None


@dataclass(frozen=True, slots=True)
class EndWorkflow:
    pass


@dataclass(frozen=True, slots=True)
class BlockWorkflow:
    pass


OutcomeAction = Continue | SkipToDeliverable | SkipToStage | EndWorkflow | BlockWorkflow


def _from_rule(rule: OutcomeRule) -> OutcomeAction:
    match rule.action:
        case OutcomeActionName.CONTINUE:
            return Continue()
        case OutcomeActionName.SKIP_TO_DELIVERABLE:
            return SkipToDeliverable(target_id=rule.target_deliverable_id)
        case OutcomeActionName.SKIP_TO_STAGE:
            return SkipToStage(target_id=rule.target_stage_id)
        case OutcomeActionName.END_WORKFLOW:
            return EndWorkflow()
        case OutcomeActionName.BLOCK_WORKFLOW:
            return BlockWorkflow()
        case _:
            assert_never(rule.action)


def resolve_outcome(
    rules: Sequence[OutcomeRule] | None, selected_outcome: str | None
) -> OutcomeAction:
    """Policy: (rules, selected outcome) -> routing action.

    The first rule whose name matches wins. No selection, or a name with no rule,
    means ``continue``.
    """

    name = (selected_outcome or "").strip()
    if not name:
        return Continue()
    for rule in rules or ():
        if rule.outcome_name == name:
            return _from_rule(rule)
    return Continue()


def action_name(action: OutcomeAction) -> OutcomeActionName:
    match action:
        case Continue():
            return OutcomeActionName.CONTINUE
        case SkipToDeliverable():
            return OutcomeActionName.SKIP_TO_DELIVERABLE
        case SkipToStage():
            return OutcomeActionName.SKIP_TO_STAGE
        case EndWorkflow():
            return OutcomeActionName.END_WORKFLOW
        case BlockWorkflow():
            return OutcomeActionName.BLOCK_WORKFLOW
        case _:
            assert_never(action)
