"""Domain types for policy evaluation: identifiers, money, rules' results and verdicts."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum, auto
from typing import Any, ClassVar, Optional, Union
from uuid import UUID

DecimalLike = Union[Decimal, int, str]

_CENT = Decimal("0.01")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError(f"not a decimal value: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"not a decimal value: {value!r}") from None
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise TypeError(f"not a decimal value: {value!r}")
    if not result.is_finite():
        raise ValueError(f"not a finite decimal value: {value!r}")
    if result.is_zero():
        result = result.copy_abs()
    return result


def _fmt(value: Decimal) -> str:
    return format(value, "f")


def _display(value: Any) -> str:
    return _fmt(value) if isinstance(value, Decimal) else str(value)


def _round_2dp(value: Decimal) -> Decimal:
    if value.as_tuple().exponent < -2:
        return value.quantize(_CENT, rounding=ROUND_HALF_EVEN)
    return value


def _json_value(value: Any) -> Any:
    if hasattr(value, "to_json"):
        return value.to_json()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return _fmt(value)
    if isinstance(value, str):
        return str(value)
    return value


def _fields_of(obj: Any) -> dict:
    return {f.name: getattr(obj, f.name) for f in fields(obj)}


class _SnakeEnum(Enum):
    """Enum whose auto() values are the member names in lower case."""

    @staticmethod
    def _generate_next_value_(name, start, count, last_values):  # type: ignore[override]
        return name.lower()

    def __str__(self) -> str:
        return self.value


# ── Errors ──────────────────────────────────────────────────


class _OutOfRangeError(ValueError):
    _template: ClassVar[str] = "{}"

    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__(self._template.format(_display(value)))


class MoneyError(_OutOfRangeError):
    """Raised when a money amount is negative."""

    _template = "Money cannot be negative: {}"

    @property
    def amount(self) -> Decimal:
        return self.value


class BasisPointsError(_OutOfRangeError):
    """Raised when basis points fall outside 0..=10000."""

    _template = "Basis points out of range (0-10000): {}"


class RiskScoreError(_OutOfRangeError):
    """Raised when a risk score falls outside [0, 1]."""

    _template = "Risk score must be between 0.0 and 1.0: {}"


# ── Identifiers ─────────────────────────────────────────────


class ProtocolId(str):
    """Protocol identifier, always lower case."""

    def __new__(cls, value: str) -> "ProtocolId":
        return super().__new__(cls, str(value).lower())


class AssetSymbol(str):
    """Asset ticker symbol, always upper case."""

    def __new__(cls, value: str) -> "AssetSymbol":
        return super().__new__(cls, str(value).upper())


class Action(_SnakeEnum):
    SUPPLY = auto()
    BORROW = auto()
    SWAP = auto()
    TRANSFER = auto()
    WITHDRAW = auto()
    STAKE = auto()


# ── Money ───────────────────────────────────────────────────


@dataclass(frozen=True, order=True)
class Money:
    """A non-negative USD amount."""

    amount: Decimal

    def __post_init__(self) -> None:
        value = _to_decimal(self.amount)
        if value < 0:
            raise MoneyError(value)
        object.__setattr__(self, "amount", value)

    @classmethod
    def zero(cls) -> "Money":
        return cls(Decimal(0))

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def __add__(self, other: object) -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def to_json(self) -> str:
        return _fmt(self.amount)

    def __str__(self) -> str:
        return f"${_fmt(_round_2dp(self.amount))}"


# ── BasisPoints ─────────────────────────────────────────────


@dataclass(frozen=True, order=True)
class BasisPoints:
    """A percentage in basis points, 0 (0%) to 10000 (100%)."""

    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"basis points must be an integer: {self.value!r}")
        if not 0 <= self.value <= 10_000:
            raise BasisPointsError(self.value)

    @classmethod
    def from_percent(cls, pct: int) -> "BasisPoints":
        return cls(pct * 100)

    def as_decimal(self) -> Decimal:
        return Decimal(self.value) / Decimal(10_000)

    def to_json(self) -> int:
        return self.value

    def __str__(self) -> str:
        return f"{_fmt(Decimal(self.value) / Decimal(100))}%"


# ── RiskScore ───────────────────────────────────────────────


@dataclass(frozen=True, order=True)
class RiskScore:
    """A protocol risk score in [0, 1]; higher is safer."""

    value: Decimal

    def __post_init__(self) -> None:
        value = _to_decimal(self.value)
        if value < 0 or value > 1:
            raise RiskScoreError(value)
        object.__setattr__(self, "value", value)

    def to_json(self) -> str:
        return _fmt(self.value)

    def __str__(self) -> str:
        return _fmt(_round_2dp(self.value))


# ── RuleId ──────────────────────────────────────────────────


class RuleId(_SnakeEnum):
    MAX_TRANSACTION_AMOUNT = auto()
    MAX_PERCENT_PER_PROTOCOL = auto()
    MAX_PERCENT_PER_ASSET = auto()
    ONLY_AUDITED_PROTOCOLS = auto()
    ALLOWED_PROTOCOLS = auto()
    BLOCKED_ACTIONS = auto()
    MAX_DAILY_SPEND = auto()
    MIN_RISK_SCORE = auto()
    MAX_PROTOCOL_UTILIZATION = auto()
    MIN_PROTOCOL_TVL = auto()


# ── Reasons a rule cannot be evaluated ──────────────────────


class CannotEvaluateReason:
    """Why a rule could not reach a pass or fail outcome."""

    def to_json(self) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class PortfolioTotalZero(CannotEvaluateReason):
    def to_json(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return "portfolio total is zero"


@dataclass(frozen=True)
class MissingContext(CannotEvaluateReason):
    context: str

    def to_json(self) -> dict:
        return {type(self).__name__: self.context}

    def __str__(self) -> str:
        return f"missing context: {self.context}"


# ── Violations ──────────────────────────────────────────────


class Violation:
    """Details of why a rule did not pass. Serialized tagged by variant name."""

    _template: ClassVar[str] = ""

    def _payload(self) -> Any:
        return {name: _json_value(value) for name, value in _fields_of(self).items()}

    def to_json(self) -> dict:
        return {type(self).__name__: self._payload()}

    def __str__(self) -> str:
        return self._template.format(**_fields_of(self))


@dataclass(frozen=True)
class TxAmountTooHigh(Violation):
    requested: Money
    max: Money

    _template = "transaction amount {requested} exceeds max {max}"


@dataclass(frozen=True)
class ProtocolExposureTooHigh(Violation):
    current_plus_requested: Money
    max_percent: BasisPoints
    portfolio_total: Money

    _template = (
        "protocol exposure {current_plus_requested} exceeds "
        "{max_percent} of portfolio {portfolio_total}"
    )


@dataclass(frozen=True)
class AssetConcentrationTooHigh(Violation):
    asset: AssetSymbol
    current_plus_requested: Money
    max_percent: BasisPoints
    portfolio_total: Money

    _template = (
        "asset {asset} concentration {current_plus_requested} exceeds "
        "{max_percent} of portfolio {portfolio_total}"
    )


@dataclass(frozen=True)
class RiskScoreTooLow(Violation):
    protocol: ProtocolId
    score: RiskScore
    min_required: RiskScore

    _template = "protocol {protocol} risk score {score} is below minimum {min_required}"


@dataclass(frozen=True)
class ProtocolNotAudited(Violation):
    protocol: ProtocolId

    _template = "protocol {protocol} is not audited"


@dataclass(frozen=True)
class ProtocolNotAllowed(Violation):
    protocol: ProtocolId

    _template = "protocol {protocol} is not in allowed list"


@dataclass(frozen=True)
class ProtocolUtilizationTooHigh(Violation):
    protocol: ProtocolId
    current_utilization: BasisPoints
    max_utilization: BasisPoints

    _template = (
        "protocol {protocol} utilization {current_utilization} "
        "exceeds max {max_utilization}"
    )


@dataclass(frozen=True)
class ProtocolTvlTooLow(Violation):
    protocol: ProtocolId
    current_tvl: Money
    min_tvl: Money

    _template = "protocol {protocol} TVL {current_tvl} is below minimum {min_tvl}"


@dataclass(frozen=True)
class ActionBlocked(Violation):
    action: Action
    blocked: tuple

    _template = "action {action} is blocked"

    def __post_init__(self) -> None:
        object.__setattr__(self, "blocked", tuple(self.blocked))


@dataclass(frozen=True)
class DailySpendExceeded(Violation):
    current_plus_requested: Money
    max: Money

    _template = "daily spend {current_plus_requested} exceeds max {max}"


@dataclass(frozen=True)
class CannotEvaluate(Violation):
    reason: CannotEvaluateReason

    _template = "cannot evaluate: {reason}"

    def _payload(self) -> Any:
        return self.reason.to_json()


# ── RuleOutcome + RuleResult ────────────────────────────────


class RuleOutcome(_SnakeEnum):
    PASS = auto()
    FAIL = auto()
    INDETERMINATE = auto()


@dataclass(frozen=True)
class RuleResult:
    """The outcome of evaluating one rule."""

    rule: RuleId
    outcome: RuleOutcome
    violation: Optional[Violation]
    message: str

    @classmethod
    def passed(cls, rule: RuleId, message: str) -> "RuleResult":
        return cls(rule, RuleOutcome.PASS, None, message)

    @classmethod
    def failed(cls, rule: RuleId, violation: Violation, message: str) -> "RuleResult":
        return cls(rule, RuleOutcome.FAIL, violation, message)

    @classmethod
    def indeterminate(
        cls, rule: RuleId, violation: Violation, message: str
    ) -> "RuleResult":
        return cls(rule, RuleOutcome.INDETERMINATE, violation, message)

    @property
    def is_failure(self) -> bool:
        """True for Fail and Indeterminate: inability to evaluate counts as failure."""
        return self.outcome in (RuleOutcome.FAIL, RuleOutcome.INDETERMINATE)

    def to_json(self) -> dict:
        return {
            "rule": self.rule.value,
            "outcome": self.outcome.value,
            "violation": None if self.violation is None else self.violation.to_json(),
            "message": self.message,
        }


# ── TransactionRequest ──────────────────────────────────────


@dataclass
class TransactionRequest:
    """A transaction an agent wants to perform."""

    user_id: UUID
    target_protocol: ProtocolId
    action: Action
    asset: AssetSymbol
    amount_usd: Money
    target_address: str

    def __post_init__(self) -> None:
        self.target_protocol = ProtocolId(self.target_protocol)
        self.asset = AssetSymbol(self.asset)

    def to_json(self) -> dict:
        return {name: _json_value(value) for name, value in _fields_of(self).items()}


# ── EvaluationContext ───────────────────────────────────────


@dataclass
class EvaluationContext:
    """Portfolio and protocol facts a request is evaluated against."""

    portfolio_total_usd: Money
    current_protocol_exposure_usd: Money
    current_asset_exposure_usd: Money
    daily_spend_usd: Money
    audited_protocols: list = field(default_factory=list)
    protocol_risk_score: Optional[RiskScore] = None
    protocol_utilization: Optional[BasisPoints] = None
    protocol_tvl: Optional[Money] = None

    def __post_init__(self) -> None:
        self.audited_protocols = [ProtocolId(p) for p in self.audited_protocols]


# ── EngineReason ────────────────────────────────────────────


class EngineReason(_SnakeEnum):
    NO_POLICIES_CONFIGURED = auto()

    def __str__(self) -> str:
        return "no policies configured — set policies before transacting"


# ── Decision + PolicyVerdict ────────────────────────────────


class Decision(_SnakeEnum):
    APPROVED = auto()
    BLOCKED = auto()


@dataclass
class PolicyVerdict:
    """The aggregated decision over all evaluated rules."""

    decision: Decision
    results: list = field(default_factory=list)
    engine_reason: Optional[EngineReason] = None

    @classmethod
    def blocked_by_engine(cls, reason: EngineReason) -> "PolicyVerdict":
        return cls(Decision.BLOCKED, [], reason)

    def failed_rules(self) -> list:
        """Results whose outcome is Fail or Indeterminate."""
        return [result for result in self.results if result.is_failure]

    def to_json(self) -> dict:
        return {
            "decision": self.decision.value,
            "results": [result.to_json() for result in self.results],
            "engine_reason": None if self.engine_reason is None else self.engine_reason.value,
        }