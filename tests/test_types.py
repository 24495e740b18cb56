import json
from decimal import Decimal
from uuid import UUID

import pytest

from callipsos.types import (
    Action,
    ActionBlocked,
    AssetSymbol,
    BasisPoints,
    BasisPointsError,
    CannotEvaluate,
    Decision,
    EngineReason,
    EvaluationContext,
    MissingContext,
    Money,
    MoneyError,
    PolicyVerdict,
    PortfolioTotalZero,
    ProtocolId,
    ProtocolNotAudited,
    RiskScore,
    RiskScoreError,
    RuleId,
    RuleOutcome,
    RuleResult,
    TransactionRequest,
    TxAmountTooHigh,
)

NIL = UUID(int=0)


def _request():
    return TransactionRequest(
        user_id=NIL,
        target_protocol=ProtocolId("aave-v3"),
        action=Action.SUPPLY,
        asset=AssetSymbol("USDC"),
        amount_usd=Money(Decimal("50")),
        target_address="0x1234",
    )


def test_protocol_id_is_lower_case():
    assert ProtocolId("AAVE-V3") == "aave-v3"


def test_asset_symbol_is_upper_case():
    assert AssetSymbol("usdc") == "USDC"


def test_action_parses_and_displays_lowercase():
    assert Action("borrow") is Action.BORROW
    assert str(Action.SUPPLY) == "supply"
    assert f"{Action.SWAP}" == "swap"


def test_money_rejects_negative():
    with pytest.raises(MoneyError, match="Money cannot be negative"):
        Money(Decimal("-1"))


def test_money_rejects_garbage():
    with pytest.raises(ValueError):
        Money("abc")


def test_money_zero():
    assert Money.zero().is_zero()
    assert not Money(Decimal("50")).is_zero()


def test_money_addition_sums_amounts():
    a = Money(Decimal("100"))
    b = Money(Decimal("50"))
    assert (a + b).amount == a.amount + b.amount
    assert a + Money.zero() == a


def test_money_ordering_and_numeric_equality():
    assert Money(Decimal("25")) < Money(Decimal("50"))
    assert Money(Decimal("50")) == Money(Decimal("50.00"))


def test_money_display():
    assert str(Money(Decimal("500"))) == "$500"
    assert str(Money(Decimal("1.005"))) == "$1.00"
    assert str(Money(Decimal("30.00"))).startswith("$")


def test_money_json_round_trip():
    m = Money(Decimal("10000.00"))
    assert isinstance(m.to_json(), str)
    assert Money(Decimal(m.to_json())) == m


def test_basis_points_from_percent():
    assert BasisPoints.from_percent(10) == BasisPoints(1000)
    assert BasisPoints.from_percent(100).value == 10_000


def test_basis_points_out_of_range():
    with pytest.raises(BasisPointsError, match="Basis points out of range"):
        BasisPoints(10_001)
    with pytest.raises(BasisPointsError):
        BasisPoints.from_percent(101)


def test_basis_points_as_decimal_invariant():
    bps = BasisPoints.from_percent(30)
    assert bps.as_decimal() * 10_000 == bps.value
    assert bps.as_decimal() <= 1


def test_basis_points_display_is_percent():
    text = str(BasisPoints.from_percent(80))
    assert text.endswith("%")
    assert Decimal(text[:-1]) == 80


def test_basis_points_json_is_int():
    assert BasisPoints(1234).to_json() == 1234


def test_risk_score_range():
    with pytest.raises(RiskScoreError, match="Risk score must be between 0.0 and 1.0"):
        RiskScore(Decimal("1.01"))
    with pytest.raises(RiskScoreError):
        RiskScore(Decimal("-0.01"))
    assert RiskScore(Decimal("0")) < RiskScore(Decimal("1"))


def test_risk_score_ordering_and_json():
    low = RiskScore(Decimal("0.30"))
    high = RiskScore(Decimal("0.80"))
    assert low < high
    assert RiskScore(Decimal(high.to_json())) == high


def test_rule_id_display():
    assert str(RuleId.MAX_TRANSACTION_AMOUNT) == "max_transaction_amount"
    assert RuleId("min_protocol_tvl") is RuleId.MIN_PROTOCOL_TVL


def test_cannot_evaluate_reasons():
    assert str(PortfolioTotalZero()) == "portfolio total is zero"
    assert PortfolioTotalZero().to_json() == "PortfolioTotalZero"
    missing = MissingContext("protocol_tvl")
    assert str(missing) == "missing context: protocol_tvl"
    assert missing.to_json() == {"MissingContext": "protocol_tvl"}


def test_cannot_evaluate_violation():
    v = CannotEvaluate(PortfolioTotalZero())
    assert str(v) == "cannot evaluate: portfolio total is zero"
    assert v.to_json() == {"CannotEvaluate": "PortfolioTotalZero"}
    nested = CannotEvaluate(MissingContext("protocol_risk_score"))
    assert nested.to_json() == {
        "CannotEvaluate": {"MissingContext": "protocol_risk_score"}
    }


def test_tx_amount_violation_json_and_display():
    v = TxAmountTooHigh(requested=Money(Decimal("50")), max=Money(Decimal("25")))
    data = v.to_json()
    assert set(data) == {"TxAmountTooHigh"}
    assert Decimal(data["TxAmountTooHigh"]["requested"]) == 50
    assert Decimal(data["TxAmountTooHigh"]["max"]) == 25
    assert "exceeds max" in str(v)


def test_action_blocked_violation_json():
    v = ActionBlocked(action=Action.SWAP, blocked=[Action.BORROW, Action.SWAP])
    assert v.to_json() == {
        "ActionBlocked": {"action": "swap", "blocked": ["borrow", "swap"]}
    }
    assert str(v) == "action swap is blocked"


def test_rule_result_constructors():
    ok = RuleResult.passed(RuleId.ONLY_AUDITED_PROTOCOLS, "fine")
    assert ok.outcome is RuleOutcome.PASS
    assert ok.violation is None
    bad = RuleResult.failed(
        RuleId.ONLY_AUDITED_PROTOCOLS,
        ProtocolNotAudited(ProtocolId("shady-yield")),
        "nope",
    )
    assert bad.outcome is RuleOutcome.FAIL
    assert bad.violation == ProtocolNotAudited(ProtocolId("shady-yield"))
    unknown = RuleResult.indeterminate(
        RuleId.MIN_RISK_SCORE, CannotEvaluate(MissingContext("protocol_risk_score")), "?"
    )
    assert unknown.outcome is RuleOutcome.INDETERMINATE


def test_rule_result_json():
    result = RuleResult.failed(
        RuleId.ONLY_AUDITED_PROTOCOLS,
        ProtocolNotAudited(ProtocolId("shady-yield")),
        "protocol shady-yield is not in audited list",
    )
    data = result.to_json()
    assert data["rule"] == "only_audited_protocols"
    assert data["outcome"] == "fail"
    assert data["violation"] == {"ProtocolNotAudited": {"protocol": "shady-yield"}}
    assert data["message"] == "protocol shady-yield is not in audited list"
    assert json.loads(json.dumps(data)) == data


def test_transaction_request_json():
    data = _request().to_json()
    assert data["user_id"] == str(NIL)
    assert data["target_protocol"] == "aave-v3"
    assert data["action"] == "supply"
    assert data["asset"] == "USDC"
    assert Decimal(data["amount_usd"]) == 50
    assert data["target_address"] == "0x1234"


def test_transaction_request_normalises_identifiers():
    req = TransactionRequest(NIL, "Aave-V3", Action.STAKE, "usdc", Money.zero(), "0x1234")
    assert req.target_protocol == "aave-v3"
    assert req.asset == "USDC"


def test_evaluation_context_normalises_protocols():
    ctx = EvaluationContext(
        Money(Decimal("500")),
        Money(Decimal("100")),
        Money(Decimal("100")),
        Money(Decimal("30")),
        ["AAVE-V3", "moonwell"],
    )
    assert ctx.audited_protocols == [ProtocolId("aave-v3"), ProtocolId("moonwell")]
    assert ctx.protocol_risk_score is None


def test_blocked_by_engine():
    verdict = PolicyVerdict.blocked_by_engine(EngineReason.NO_POLICIES_CONFIGURED)
    assert verdict.decision is Decision.BLOCKED
    assert verdict.results == []
    assert verdict.to_json() == {
        "decision": "blocked",
        "results": [],
        "engine_reason": "no_policies_configured",
    }
    assert str(EngineReason.NO_POLICIES_CONFIGURED) == (
        "no policies configured — set policies before transacting"
    )


def test_failed_rules_includes_indeterminate():
    ok = RuleResult.passed(RuleId.MAX_DAILY_SPEND, "ok")
    fail = RuleResult.failed(
        RuleId.MAX_TRANSACTION_AMOUNT,
        TxAmountTooHigh(Money(Decimal("50")), Money(Decimal("25"))),
        "too much",
    )
    unknown = RuleResult.indeterminate(
        RuleId.MAX_PERCENT_PER_ASSET, CannotEvaluate(PortfolioTotalZero()), "?"
    )
    verdict = PolicyVerdict(Decision.BLOCKED, [ok, fail, unknown])
    assert verdict.failed_rules() == [fail, unknown]
    data = verdict.to_json()
    assert data["engine_reason"] is None
    assert [r["outcome"] for r in data["results"]] == ["pass", "fail", "indeterminate"]
    assert data["decision"] == "blocked"