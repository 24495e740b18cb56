"""Ready-made rule sets, from most to least conservative."""

from __future__ import annotations

from decimal import Decimal

from callipsos.rules import (
    BlockedActions,
    MaxDailySpend,
    MaxPercentPerAsset,
    MaxPercentPerProtocol,
    MaxProtocolUtilization,
    MaxTransactionAmount,
    MinProtocolTvl,
    MinRiskScore,
    OnlyAuditedProtocols,
    PolicyRule,
)
from callipsos.types import Action, BasisPoints, Money, RiskScore


def safety_first() -> list[PolicyRule]:
    """Capital preservation: only Supply, Withdraw and Stake are allowed."""
    return [
        MaxTransactionAmount(Money(Decimal("500"))),
        MaxDailySpend(Money(Decimal("1000"))),
        MaxPercentPerProtocol(BasisPoints.from_percent(10)),
        MaxPercentPerAsset(BasisPoints.from_percent(30)),
        OnlyAuditedProtocols(),
        BlockedActions((Action.BORROW, Action.SWAP, Action.TRANSFER)),
        MinRiskScore(RiskScore(Decimal("0.80"))),
        MaxProtocolUtilization(BasisPoints.from_percent(80)),
        MinProtocolTvl(Money(Decimal("50000000"))),
    ]


def balanced() -> list[PolicyRule]:
    """Middle ground: allows Swap, blocks Borrow and Transfer."""
    return [
        MaxTransactionAmount(Money(Decimal("2000"))),
        MaxDailySpend(Money(Decimal("5000"))),
        MaxPercentPerProtocol(BasisPoints.from_percent(25)),
        MaxPercentPerAsset(BasisPoints.from_percent(50)),
        OnlyAuditedProtocols(),
        BlockedActions((Action.BORROW, Action.TRANSFER)),
        MinRiskScore(RiskScore(Decimal("0.65"))),
        MaxProtocolUtilization(BasisPoints.from_percent(90)),
        MinProtocolTvl(Money(Decimal("10000000"))),
    ]


def best_yields() -> list[PolicyRule]:
    """Aggressive: still requires audited protocols and blocks Transfer."""
    return [
        MaxTransactionAmount(Money(Decimal("5000"))),
        MaxDailySpend(Money(Decimal("10000"))),
        MaxPercentPerProtocol(BasisPoints.from_percent(40)),
        MaxPercentPerAsset(BasisPoints.from_percent(70)),
        OnlyAuditedProtocols(),
        BlockedActions((Action.TRANSFER,)),
        MinRiskScore(RiskScore(Decimal("0.50"))),
        MaxProtocolUtilization(BasisPoints.from_percent(95)),
        MinProtocolTvl(Money(Decimal("5000000"))),
    ]


_PRESETS = {
    "safety_first": safety_first,
    "balanced": balanced,
    "best_yields": best_yields,
}


def by_name(name: str) -> list[PolicyRule]:
    """Return the rules of the named preset; raise ValueError for an unknown name."""
    try:
        factory = _PRESETS[name]
    except KeyError:
        raise ValueError(
            f"Invalid preset name: '{name}'. "
            f"Valid presets: {', '.join(_PRESETS)}"
        ) from None
    return factory()