"""Policy rules: each carries its threshold and evaluates one transaction."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, ClassVar, Iterable

from callipsos.types import (
    Action,
    ActionBlocked,
    AssetConcentrationTooHigh,
    BasisPoints,
    CannotEvaluate,
    DailySpendExceeded,
    EvaluationContext,
    MissingContext,
    Money,
    PortfolioTotalZero,
    ProtocolExposureTooHigh,
    ProtocolId,
    ProtocolNotAllowed,
    ProtocolNotAudited,
    ProtocolTvlTooLow,
    ProtocolUtilizationTooHigh,
    RiskScore,
    RiskScoreTooLow,
    RuleId,
    RuleResult,
    TransactionRequest,
    TxAmountTooHigh,
)

_TENTH = Decimal("0.1")
_HUNDRED = Decimal(100)
_MISSING = object()


class RuleParseError(ValueError):
    """Raised when JSON does not describe a valid policy rule."""


def _percent(ratio: Decimal) -> str:
    return format((ratio * _HUNDRED).quantize(_TENTH, rounding=ROUND_HALF_EVEN), "f")


def _parse_money(raw: Any) -> Money:
    if isinstance(raw, bool):
        raise RuleParseError(f"invalid money amount: {raw!r}")
    try:
        return Money(raw)
    except (TypeError, ValueError) as exc:
        raise RuleParseError(f"invalid money amount: {exc}") from None


def _parse_basis_points(raw: Any) -> BasisPoints:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise RuleParseError(f"invalid basis points: {raw!r}")
    try:
        return BasisPoints(raw)
    except ValueError as exc:
        raise RuleParseError(f"invalid basis points: {exc}") from None


def _parse_risk_score(raw: Any) -> RiskScore:
    if isinstance(raw, bool):
        raise RuleParseError(f"invalid risk score: {raw!r}")
    try:
        return RiskScore(raw)
    except (TypeError, ValueError) as exc:
        raise RuleParseError(f"invalid risk score: {exc}") from None


def _parse_list(raw: Any, what: str) -> list:
    if not isinstance(raw, list):
        raise RuleParseError(f"expected a list of {what}, got {raw!r}")
    if not all(isinstance(item, str) for item in raw):
        raise RuleParseError(f"expected a list of {what}, got {raw!r}")
    return raw


def _parse_actions(raw: Any) -> tuple:
    try:
        return tuple(Action(item) for item in _parse_list(raw, "actions"))
    except ValueError as exc:
        raise RuleParseError(f"invalid action: {exc}") from None


class PolicyRule(ABC):
    """A single policy rule. Serialized as the rule name, tagged with its threshold."""

    id: ClassVar[RuleId]

    @abstractmethod
    def evaluate(
        self, request: TransactionRequest, context: EvaluationContext
    ) -> RuleResult:
        """Evaluate this rule against a request and its context."""

    def _payload(self) -> Any:
        (only,) = fields(self)  # type: ignore[arg-type]
        return getattr(self, only.name).to_json()

    @classmethod
    def _from_payload(cls, payload: Any) -> "PolicyRule":
        raise RuleParseError(f"variant {cls.__name__} takes no value")

    def to_json(self) -> Any:
        if not fields(self):  # type: ignore[arg-type]
            return type(self).__name__
        return {type(self).__name__: self._payload()}

    @classmethod
    def from_json(cls, data: Any) -> "PolicyRule":
        if isinstance(data, str):
            name, payload = data, _MISSING
        elif isinstance(data, dict) and len(data) == 1:
            ((name, payload),) = data.items()
        else:
            raise RuleParseError(f"expected a rule name or a single-key object, got {data!r}")
        rule_cls = _RULES.get(name)
        if rule_cls is None:
            known = ", ".join(_RULES)
            raise RuleParseError(f"unknown variant `{name}`, expected one of {known}")
        if not fields(rule_cls):
            if payload is not _MISSING and payload is not None:
                raise RuleParseError(f"variant {name} takes no value")
            return rule_cls()
        if payload is _MISSING:
            raise RuleParseError(f"variant {name} requires a value")
        return rule_cls._from_payload(payload)


@dataclass(frozen=True)
class MaxTransactionAmount(PolicyRule):
    max: Money
    id: ClassVar[RuleId] = RuleId.MAX_TRANSACTION_AMOUNT

    @classmethod
    def _from_payload(cls, payload: Any) -> "MaxTransactionAmount":
        return cls(_parse_money(payload))

    def evaluate(self, request, context):
        amount = request.amount_usd
        if amount > self.max:
            return RuleResult.failed(
                self.id,
                TxAmountTooHigh(requested=amount, max=self.max),
                f"amount {amount} exceeds {self.max} limit",
            )
        return RuleResult.passed(self.id, f"amount {amount} within {self.max} limit")


@dataclass(frozen=True)
class MaxPercentPerProtocol(PolicyRule):
    max_bps: BasisPoints
    id: ClassVar[RuleId] = RuleId.MAX_PERCENT_PER_PROTOCOL

    @classmethod
    def _from_payload(cls, payload: Any) -> "MaxPercentPerProtocol":
        return cls(_parse_basis_points(payload))

    def evaluate(self, request, context):
        total = context.portfolio_total_usd
        if total.is_zero():
            return RuleResult.indeterminate(
                self.id,
                CannotEvaluate(PortfolioTotalZero()),
                "cannot evaluate protocol exposure: portfolio total is zero",
            )
        exposure_after = context.current_protocol_exposure_usd + request.amount_usd
        ratio = exposure_after.amount / total.amount
        pct = _percent(ratio)
        if ratio > self.max_bps.as_decimal():
            return RuleResult.failed(
                self.id,
                ProtocolExposureTooHigh(
                    current_plus_requested=exposure_after,
                    max_percent=self.max_bps,
                    portfolio_total=total,
                ),
                f"protocol exposure {pct}% exceeds {self.max_bps} cap",
            )
        return RuleResult.passed(
            self.id, f"protocol exposure {pct}% within {self.max_bps} cap"
        )


@dataclass(frozen=True)
class MaxPercentPerAsset(PolicyRule):
    max_bps: BasisPoints
    id: ClassVar[RuleId] = RuleId.MAX_PERCENT_PER_ASSET

    @classmethod
    def _from_payload(cls, payload: Any) -> "MaxPercentPerAsset":
        return cls(_parse_basis_points(payload))

    def evaluate(self, request, context):
        total = context.portfolio_total_usd
        if total.is_zero():
            return RuleResult.indeterminate(
                self.id,
                CannotEvaluate(PortfolioTotalZero()),
                "cannot evaluate asset concentration: portfolio total is zero",
            )
        exposure_after = context.current_asset_exposure_usd + request.amount_usd
        ratio = exposure_after.amount / total.amount
        pct = _percent(ratio)
        if ratio > self.max_bps.as_decimal():
            return RuleResult.failed(
                self.id,
                AssetConcentrationTooHigh(
                    asset=request.asset,
                    current_plus_requested=exposure_after,
                    max_percent=self.max_bps,
                    portfolio_total=total,
                ),
                f"asset {request.asset} exposure {pct}% exceeds {self.max_bps} cap",
            )
        return RuleResult.passed(
            self.id, f"asset {request.asset} exposure {pct}% within {self.max_bps} cap"
        )


@dataclass(frozen=True)
class OnlyAuditedProtocols(PolicyRule):
    id: ClassVar[RuleId] = RuleId.ONLY_AUDITED_PROTOCOLS

    def evaluate(self, request, context):
        protocol = request.target_protocol
        if protocol in context.audited_protocols:
            return RuleResult.passed(self.id, f"protocol {protocol} is audited")
        return RuleResult.failed(
            self.id,
            ProtocolNotAudited(protocol=protocol),
            f"protocol {protocol} is not in audited list",
        )


@dataclass(frozen=True)
class AllowedProtocols(PolicyRule):
    protocols: tuple
    id: ClassVar[RuleId] = RuleId.ALLOWED_PROTOCOLS

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "protocols", tuple(ProtocolId(p) for p in self.protocols)
        )

    def _payload(self) -> Any:
        return [str(p) for p in self.protocols]

    @classmethod
    def _from_payload(cls, payload: Any) -> "AllowedProtocols":
        return cls(tuple(_parse_list(payload, "protocols")))

    def evaluate(self, request, context):
        protocol = request.target_protocol
        if protocol in self.protocols:
            return RuleResult.passed(self.id, f"protocol {protocol} is in allowed list")
        return RuleResult.failed(
            self.id,
            ProtocolNotAllowed(protocol=protocol),
            f"protocol {protocol} is not in allowed list",
        )


@dataclass(frozen=True)
class BlockedActions(PolicyRule):
    actions: tuple
    id: ClassVar[RuleId] = RuleId.BLOCKED_ACTIONS

    def __post_init__(self) -> None:
        object.__setattr__(self, "actions", tuple(Action(a) for a in self.actions))

    def _payload(self) -> Any:
        return [a.value for a in self.actions]

    @classmethod
    def _from_payload(cls, payload: Any) -> "BlockedActions":
        return cls(_parse_actions(payload))

    def evaluate(self, request, context):
        action = request.action
        if action in self.actions:
            return RuleResult.failed(
                self.id,
                ActionBlocked(action=action, blocked=self.actions),
                f"action {action} is blocked",
            )
        return RuleResult.passed(self.id, f"action {action} is permitted")


@dataclass(frozen=True)
class MaxDailySpend(PolicyRule):
    max: Money
    id: ClassVar[RuleId] = RuleId.MAX_DAILY_SPEND

    @classmethod
    def _from_payload(cls, payload: Any) -> "MaxDailySpend":
        return cls(_parse_money(payload))

    def evaluate(self, request, context):
        total_after = context.daily_spend_usd + request.amount_usd
        if total_after > self.max:
            return RuleResult.failed(
                self.id,
                DailySpendExceeded(current_plus_requested=total_after, max=self.max),
                f"daily spend {total_after} would exceed {self.max} limit",
            )
        return RuleResult.passed(
            self.id, f"daily spend {total_after} within {self.max} limit"
        )


@dataclass(frozen=True)
class MinRiskScore(PolicyRule):
    min: RiskScore
    id: ClassVar[RuleId] = RuleId.MIN_RISK_SCORE

    @classmethod
    def _from_payload(cls, payload: Any) -> "MinRiskScore":
        return cls(_parse_risk_score(payload))

    def evaluate(self, request, context):
        score = context.protocol_risk_score
        protocol = request.target_protocol
        if score is None:
            return RuleResult.indeterminate(
                self.id,
                CannotEvaluate(MissingContext("protocol_risk_score")),
                "cannot evaluate risk score: data not available",
            )
        if score < self.min:
            return RuleResult.failed(
                self.id,
                RiskScoreTooLow(protocol=protocol, score=score, min_required=self.min),
                f"protocol {protocol} risk score {score} below minimum {self.min}",
            )
        return RuleResult.passed(
            self.id, f"protocol {protocol} risk score {score} meets minimum {self.min}"
        )


@dataclass(frozen=True)
class MaxProtocolUtilization(PolicyRule):
    max_bps: BasisPoints
    id: ClassVar[RuleId] = RuleId.MAX_PROTOCOL_UTILIZATION

    @classmethod
    def _from_payload(cls, payload: Any) -> "MaxProtocolUtilization":
        return cls(_parse_basis_points(payload))

    def evaluate(self, request, context):
        current = context.protocol_utilization
        protocol = request.target_protocol
        if current is None:
            return RuleResult.indeterminate(
                self.id,
                CannotEvaluate(MissingContext("protocol_utilization")),
                "cannot evaluate utilization: data not available",
            )
        if current > self.max_bps:
            return RuleResult.failed(
                self.id,
                ProtocolUtilizationTooHigh(
                    protocol=protocol,
                    current_utilization=current,
                    max_utilization=self.max_bps,
                ),
                f"protocol {protocol} utilization {current} exceeds {self.max_bps} cap",
            )
        return RuleResult.passed(
            self.id,
            f"protocol {protocol} utilization {current} within {self.max_bps} cap",
        )


@dataclass(frozen=True)
class MinProtocolTvl(PolicyRule):
    min: Money
    id: ClassVar[RuleId] = RuleId.MIN_PROTOCOL_TVL

    @classmethod
    def _from_payload(cls, payload: Any) -> "MinProtocolTvl":
        return cls(_parse_money(payload))

    def evaluate(self, request, context):
        tvl = context.protocol_tvl
        protocol = request.target_protocol
        if tvl is None:
            return RuleResult.indeterminate(
                self.id,
                CannotEvaluate(MissingContext("protocol_tvl")),
                "cannot evaluate TVL: data not available",
            )
        if tvl < self.min:
            return RuleResult.failed(
                self.id,
                ProtocolTvlTooLow(protocol=protocol, current_tvl=tvl, min_tvl=self.min),
                f"protocol {protocol} TVL {tvl} below {self.min} minimum",
            )
        return RuleResult.passed(
            self.id, f"protocol {protocol} TVL {tvl} meets {self.min} minimum"
        )


_RULES = {
    rule_cls.__name__: rule_cls
    for rule_cls in (
        MaxTransactionAmount,
        MaxPercentPerProtocol,
        MaxPercentPerAsset,
        OnlyAuditedProtocols,
        AllowedProtocols,
        BlockedActions,
        MaxDailySpend,
        MinRiskScore,
        MaxProtocolUtilization,
        MinProtocolTvl,
    )
}


def rules_from_json(data: Any) -> list:
    """Parse a JSON array of rules."""
    if not isinstance(data, list):
        raise RuleParseError(f"expected a list of rules, got {data!r}")
    return [PolicyRule.from_json(item) for item in data]


def rules_to_json(rules: Iterable[PolicyRule]) -> list:
    """Serialize rules to a JSON array."""
    return [rule.to_json() for rule in rules]