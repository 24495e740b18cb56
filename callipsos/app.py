"""HTTP API: health, users, policies and transaction validation."""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import re
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from callipsos import engine, presets
from callipsos.errors import AppError, BadRequest, InternalError, NotFound
from callipsos.rules import RuleParseError, rules_from_json, rules_to_json
from callipsos.storage import Database, connect
from callipsos.types import (
    Action,
    AssetSymbol,
    BasisPoints,
    BasisPointsError,
    EvaluationContext,
    Money,
    MoneyError,
    ProtocolId,
    RiskScore,
    RiskScoreError,
    TransactionRequest,
)

log = logging.getLogger(__name__)

HOST = "127.0.0.1"
PORT = 3000

_U32_MAX = 2**32 - 1
_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1
_DECIMAL_TEXT = re.compile(r"[+-]?[0-9_]*(?:\.[0-9_]*)?")


class _UnsupportedMediaType(AppError):
    status_code = 415
    label = "Unsupported media type"


class _UnprocessableEntity(AppError):
    status_code = 422
    label = "Unprocessable entity"


# ── Request body shape checks ───────────────────────────────


def _shape_error(message: str) -> AppError:
    return _UnprocessableEntity(
        f"Failed to deserialize the JSON body into the target type: {message}"
    )


def _absent(obj: dict, name: str, expected: str) -> AppError:
    if name in obj:
        return _shape_error(f"{name}: invalid type: null, expected {expected}")
    return _shape_error(f"missing field `{name}`")


def _object(obj: dict, name: str) -> dict:
    value = obj.get(name)
    if value is None:
        raise _absent(obj, name, "an object")
    if not isinstance(value, dict):
        raise _shape_error(f"{name}: invalid type, expected an object")
    return value


def _string(obj: dict, name: str, *, optional: bool = False) -> Optional[str]:
    value = obj.get(name)
    if value is None:
        if optional:
            return None
        raise _absent(obj, name, "a string")
    if not isinstance(value, str):
        raise _shape_error(f"{name}: invalid type, expected a string")
    return value


def _number(obj: dict, name: str) -> Optional[float]:
    value = obj.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _shape_error(f"{name}: invalid type, expected a number")
    return value


def _string_list(obj: dict, name: str) -> list:
    value = obj.get(name)
    if value is None:
        raise _absent(obj, name, "a sequence")
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise _shape_error(f"{name}: invalid type, expected a sequence of strings")
    return value


def _uuid_field(obj: dict, name: str) -> UUID:
    text = _string(obj, name)
    try:
        return UUID(text)
    except ValueError:
        raise _shape_error(f"{name}: UUID parsing failed: '{text}'") from None


def _action_field(obj: dict, name: str) -> Action:
    text = _string(obj, name)
    try:
        return Action(text)
    except ValueError:
        expected = ", ".join(f"`{action.value}`" for action in Action)
        raise _shape_error(
            f"{name}: unknown variant `{text}`, expected one of {expected}"
        ) from None


def _json_body() -> dict:
    if not request.is_json:
        raise _UnsupportedMediaType(
            "Expected request with `Content-Type: application/json`"
        )
    try:
        payload = json.loads(request.get_data(as_text=True))
    except ValueError as exc:
        raise BadRequest(f"Failed to parse the request body as JSON: {exc}") from None
    if not isinstance(payload, dict):
        raise _shape_error("invalid type, expected a JSON object")
    return payload


# ── Conversions ─────────────────────────────────────────────


def parse_money(field: str, value: str) -> Money:
    """Parse a decimal string into Money; raise BadRequest naming the field."""
    text = value if isinstance(value, str) else ""
    if not _DECIMAL_TEXT.fullmatch(text) or not any(ch.isdigit() for ch in text):
        raise BadRequest(f"Invalid decimal for {field}: '{value}'")
    amount = Decimal(text.replace("_", ""))
    try:
        return Money(amount)
    except MoneyError as exc:
        raise BadRequest(f"Invalid {field}: {exc}") from None


def _risk_score(value: float) -> RiskScore:
    if not math.isfinite(value):
        raise BadRequest(f"Invalid protocol_risk_score: {value}")
    try:
        return RiskScore(Decimal(value))
    except RiskScoreError as exc:
        raise BadRequest(f"Invalid protocol_risk_score: {exc}") from None


def _utilization(value: float) -> BasisPoints:
    scaled = value * 10_000.0
    if math.isnan(scaled) or scaled <= 0:
        bps = 0
    elif math.isinf(scaled):
        bps = _U32_MAX
    else:
        bps = min(int(scaled), _U32_MAX)
    try:
        return BasisPoints(bps)
    except BasisPointsError as exc:
        raise BadRequest(f"Invalid protocol_utilization_pct: {exc}") from None


def convert_request(payload: Any) -> tuple[TransactionRequest, EvaluationContext]:
    """Turn a validate request body into a transaction request and its context."""
    if not isinstance(payload, dict):
        raise _shape_error("invalid type, expected a JSON object")
    user_id = _uuid_field(payload, "user_id")
    target_protocol = _string(payload, "target_protocol")
    action = _action_field(payload, "action")
    asset = _string(payload, "asset")
    amount_text = _string(payload, "amount_usd")
    target_address = _string(payload, "target_address")
    ctx = _object(payload, "context")
    portfolio_text = _string(ctx, "portfolio_total_usd")
    protocol_exposure_text = _string(ctx, "current_protocol_exposure_usd")
    asset_exposure_text = _string(ctx, "current_asset_exposure_usd")
    daily_spend_text = _string(ctx, "daily_spend_usd")
    audited = _string_list(ctx, "audited_protocols")
    risk_value = _number(ctx, "protocol_risk_score")
    utilization_value = _number(ctx, "protocol_utilization_pct")
    tvl_text = _string(ctx, "protocol_tvl_usd", optional=True)

    amount_usd = parse_money("amount_usd", amount_text)
    portfolio_total = parse_money("portfolio_total_usd", portfolio_text)
    protocol_exposure = parse_money(
        "current_protocol_exposure_usd", protocol_exposure_text
    )
    asset_exposure = parse_money("current_asset_exposure_usd", asset_exposure_text)
    daily_spend = parse_money("daily_spend_usd", daily_spend_text)
    risk_score = None if risk_value is None else _risk_score(risk_value)
    utilization = None if utilization_value is None else _utilization(utilization_value)
    tvl = None if tvl_text is None else parse_money("protocol_tvl_usd", tvl_text)

    tx_request = TransactionRequest(
        user_id=user_id,
        target_protocol=ProtocolId(target_protocol),
        action=action,
        asset=AssetSymbol(asset),
        amount_usd=amount_usd,
        target_address=target_address,
    )
    context = EvaluationContext(
        portfolio_total_usd=portfolio_total,
        current_protocol_exposure_usd=protocol_exposure,
        current_asset_exposure_usd=asset_exposure,
        daily_spend_usd=daily_spend,
        audited_protocols=[ProtocolId(p) for p in audited],
        protocol_risk_score=risk_score,
        protocol_utilization=utilization,
        protocol_tvl=tvl,
    )
    return tx_request, context


def _parse_uuid(text: str, prefix: str) -> UUID:
    try:
        return UUID(text)
    except ValueError:
        raise BadRequest(f"{prefix}: UUID parsing failed: '{text}'") from None


# ── Application ─────────────────────────────────────────────


def create_app(db: Database) -> Flask:
    """Build the API application backed by the given database."""
    app = Flask(__name__)
    app.json.sort_keys = False

    @app.errorhandler(AppError)
    def _handle_app_error(err: AppError):
        return jsonify(err.body()), err.status_code

    @app.get("/health")
    def health_check():
        return jsonify({"status": "ok"})

    @app.post("/api/v1/users")
    def create_user():
        payload = _json_body()
        telegram_id = payload.get("telegram_id")
        if telegram_id is not None and (
            isinstance(telegram_id, bool)
            or not isinstance(telegram_id, int)
            or not _I64_MIN <= telegram_id <= _I64_MAX
        ):
            raise _shape_error("telegram_id: invalid type, expected i64")
        user = db.create_user(telegram_id)
        return jsonify(user.to_json()), 201

    @app.post("/api/v1/policies")
    def create_policy():
        payload = _json_body()
        user_id = _uuid_field(payload, "user_id")
        name = _string(payload, "name")
        preset = _string(payload, "preset", optional=True)
        rules = payload.get("rules")

        if preset is not None and rules is not None:
            raise BadRequest("Provide either 'preset' or 'rules', not both")
        if preset is None and rules is None:
            raise BadRequest("Provide either 'preset' or 'rules'")
        if preset is not None:
            try:
                rules_json = rules_to_json(presets.by_name(preset))
            except ValueError as exc:
                raise BadRequest(str(exc)) from None
        else:
            try:
                rules_from_json(rules)
            except RuleParseError as exc:
                raise BadRequest(f"Invalid rules: {exc}") from None
            rules_json = rules

        if db.find_user(user_id) is None:
            raise NotFound(f"User {user_id} not found")
        policy = db.create_policy(user_id, name, rules_json)
        return jsonify(policy.to_json()), 201

    @app.get("/api/v1/policies")
    def get_policies():
        raw = request.args.get("user_id")
        if raw is None:
            raise BadRequest("Failed to deserialize query string: missing field `user_id`")
        user_id = _parse_uuid(raw, "Failed to deserialize query string: user_id")
        return jsonify([policy.to_json() for policy in db.active_policies(user_id)])

    @app.delete("/api/v1/policies/<policy_id>")
    def delete_policy(policy_id: str):
        parsed = _parse_uuid(policy_id, "Invalid URL")
        if not db.soft_delete_policy(parsed):
            raise NotFound(f"Policy {parsed} not found")
        return "", 204

    @app.post("/api/v1/validate")
    def validate():
        payload = _json_body()
        tx_request, context = convert_request(payload)
        user_id = tx_request.user_id

        if db.find_user(user_id) is None:
            raise NotFound(f"User {user_id} not found")

        all_rules = []
        for row in db.active_policies(user_id):
            try:
                all_rules.extend(rules_from_json(row.rules_json))
            except RuleParseError as exc:
                raise InternalError(
                    f"Failed to deserialize rules for policy {row.id}: {exc}"
                ) from None

        verdict = engine.evaluate(all_rules, tx_request, context)
        db.log_transaction(
            user_id,
            None,
            tx_request.to_json(),
            verdict.decision.value,
            [result.to_json() for result in verdict.results],
        )
        return jsonify(verdict.to_json()), 200

    return app


def _log_level() -> int:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def main(argv: Optional[list] = None) -> int:
    """Start the API server on 127.0.0.1:3000 using DATABASE_URL."""
    parser = argparse.ArgumentParser(
        prog="callipsos", description="Run the transaction policy API server."
    )
    parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(
        level=_log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL must be set")

    db = connect(database_url)
    try:
        db.migrate()
        app = create_app(db)
        log.info("Listening on http://%s:%d", HOST, PORT)
        app.run(host=HOST, port=PORT)
    finally:
        db.close()
    return 0