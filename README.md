# callipsos

A policy engine for on-chain agents. Before an agent moves money, it asks
callipsos whether the transaction fits the owner's risk policies. Every
active rule is evaluated, the results are returned together with a single
`approved` or `blocked` decision, and each verdict is written to a
transaction log.

The engine fails closed: a user with no policies is always blocked, and a
rule that cannot be evaluated (missing data, zero portfolio) counts as a
failure.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## Running the service

The service reads its settings from the environment, and from a `.env`
file in the working directory if one exists.

- `DATABASE_URL` (required): the SQLite database that holds users,
  policies and the transaction log. Either a `sqlite:` URL
  (`sqlite:callipsos.db`, `sqlite://callipsos.db`) or a plain file path.
  The tables are created on start-up if they do not exist.
- `LOG_LEVEL` (optional): a logging level name such as `DEBUG` or
  `WARNING`; defaults to `INFO`.

Start the server:

```
callipsos
```

It listens on `http://127.0.0.1:3000`, using Flask's built-in server.

## HTTP API

| Method | Path                          | Purpose                                    |
|--------|-------------------------------|--------------------------------------------|
| GET    | `/health`                     | Liveness check, returns `{"status": "ok"}` |
| POST   | `/api/v1/users`               | Create a user (optional `telegram_id`)     |
| POST   | `/api/v1/policies`            | Create a policy from a preset or rules     |
| GET    | `/api/v1/policies?user_id=…`  | List a user's active policies, oldest first |
| DELETE | `/api/v1/policies/<id>`       | Deactivate a policy (204 on success)       |
| POST   | `/api/v1/validate`            | Evaluate a transaction                     |

Errors are returned as `{"error": "<message>"}` with status 400 (bad
input), 404 (unknown user or policy), 409 (duplicate `telegram_id`),
415 (body not sent as JSON), 422 (body missing a field or with a field of
the wrong type) or 500. Details of 500 errors are logged, and the client
only sees `Internal server error`.

### Creating a policy

Give exactly one of `preset` or `rules`:

```json
{"user_id": "<uuid>", "name": "My Safety Policy", "preset": "safety_first"}
```

Presets: `safety_first`, `balanced`, `best_yields`.

Custom rules are a JSON list. Rules without a threshold are plain strings;
the others are single-key objects:

```json
{
  "user_id": "<uuid>",
  "name": "Custom Rules",
  "rules": [
    {"MaxTransactionAmount": "100"},
    "OnlyAuditedProtocols",
    {"BlockedActions": ["borrow", "transfer"]}
  ]
}
```

Available rules: `MaxTransactionAmount`, `MaxPercentPerProtocol`,
`MaxPercentPerAsset`, `OnlyAuditedProtocols`, `AllowedProtocols`,
`BlockedActions`, `MaxDailySpend`, `MinRiskScore`,
`MaxProtocolUtilization`, `MinProtocolTvl`. Money amounts are decimal
strings, percentages are integer basis points (1000 = 10%), risk scores lie
between 0 and 1, `AllowedProtocols` takes a list of protocol names and
`BlockedActions` a list of actions.

### Validating a transaction

```json
{
  "user_id": "<uuid>",
  "target_protocol": "aave-v3",
  "action": "supply",
  "asset": "USDC",
  "amount_usd": "30.00",
  "target_address": "0x1234",
  "context": {
    "portfolio_total_usd": "10000.00",
    "current_protocol_exposure_usd": "0.00",
    "current_asset_exposure_usd": "0.00",
    "daily_spend_usd": "0.00",
    "audited_protocols": ["aave-v3", "moonwell"],
    "protocol_risk_score": 0.90,
    "protocol_utilization_pct": 0.50,
    "protocol_tvl_usd": "500000000"
  }
}
```

`protocol_risk_score`, `protocol_utilization_pct` (a fraction, 0.5 = 50%)
and `protocol_tvl_usd` may be left out; rules that need them are then
indeterminate.

The response holds `decision` (`approved` or `blocked`), one entry in
`results` per rule evaluated, in policy and rule order (with `rule`,
`outcome`, `violation` and `message`), and `engine_reason`, which is
`no_policies_configured` when the user has no active policies.

Actions: `supply`, `borrow`, `swap`, `transfer`, `withdraw`, `stake`.
Protocol names are compared in lower case, asset symbols in upper case.

## Using the engine as a library

```python
import uuid
from decimal import Decimal

from callipsos.engine import evaluate
from callipsos.presets import safety_first
from callipsos.types import (
    Action, AssetSymbol, BasisPoints, EvaluationContext, Money,
    ProtocolId, RiskScore, TransactionRequest,
)

request = TransactionRequest(
    user_id=uuid.uuid4(),
    target_protocol=ProtocolId("aave-v3"),
    action=Action.SUPPLY,
    asset=AssetSymbol("usdc"),
    amount_usd=Money(Decimal("30")),
    target_address="0x1234",
)
context = EvaluationContext(
    portfolio_total_usd=Money(Decimal("10000")),
    current_protocol_exposure_usd=Money.zero(),
    current_asset_exposure_usd=Money.zero(),
    daily_spend_usd=Money.zero(),
    audited_protocols=[ProtocolId("aave-v3")],
    protocol_risk_score=RiskScore(Decimal("0.90")),
    protocol_utilization=BasisPoints.from_percent(50),
    protocol_tvl=Money(Decimal("500000000")),
)

verdict = evaluate(safety_first(), request, context)
print(verdict.decision)
for result in verdict.failed_rules():
    print(result.rule, result.message)
```

The modules:

- `callipsos.types`: `Money`, `BasisPoints`, `RiskScore`, `ProtocolId`,
  `AssetSymbol`, `Action`, the violation classes, `RuleResult`,
  `TransactionRequest`, `EvaluationContext` and `PolicyVerdict`.
- `callipsos.rules`: the rule classes, `PolicyRule.from_json`,
  `rules_from_json` and `rules_to_json`.
- `callipsos.engine`: `evaluate`.
- `callipsos.presets`: `safety_first`, `balanced`, `best_yields` and
  `by_name`.
- `callipsos.storage`: `connect` and `Database`, with `create_user`,
  `find_user`, `create_policy`, `active_policies`, `soft_delete_policy`,
  `log_transaction` and `transaction_logs`.
- `callipsos.app`: `create_app(db)` builds the Flask application,
  `main()` runs it.

## What it does not do

- Storage is SQLite only; other database URLs are rejected.
- The API has no authentication: any client that can reach the server can
  create users and policies and validate transactions for any user.
- The server address is fixed at `127.0.0.1:3000`, and it runs on Flask's
  built-in server rather than a production WSGI server.
- Rules are not filtered by action: exposure and spend limits apply to
  withdrawals and transfers as well.