"""Aggregates individual rule results into a single verdict."""

from __future__ import annotations

from typing import Sequence

from callipsos.rules import PolicyRule
from callipsos.types import (
    Decision,
    EngineReason,
    EvaluationContext,
    PolicyVerdict,
    TransactionRequest,
)


def evaluate(
    rules: Sequence[PolicyRule],
    request: TransactionRequest,
    context: EvaluationContext,
) -> PolicyVerdict:
    """Evaluate every rule; block on any Fail or Indeterminate, or when there are no rules."""
    if not rules:
        return PolicyVerdict.blocked_by_engine(EngineReason.NO_POLICIES_CONFIGURED)

    results = [rule.evaluate(request, context) for rule in rules]
    blocked = any(result.is_failure for result in results)
    return PolicyVerdict(
        decision=Decision.BLOCKED if blocked else Decision.APPROVED,
        results=results,
        engine_reason=None,
    )