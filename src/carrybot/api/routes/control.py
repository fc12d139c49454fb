"""JSON control endpoints: status, depositor registration, close, retry and reports."""

from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from carrybot.exceptions import (
    CarryBotError,
    InsufficientFundsError,
    InvalidPhaseError,
    StepError,
)
from carrybot.models import Direction

log = structlog.get_logger(__name__)

router = APIRouter()


def _decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal values to strings for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, dict):
        return {k: _decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_str(item) for item in obj]
    return obj


def _error_response(error: Exception) -> JSONResponse:
    """Map a bot exception to an error payload."""
    content: dict[str, Any] = {"error": str(error), "type": type(error).__name__}
    if isinstance(error, StepError):
        content["step"] = error.step
        status_code = 502
    elif isinstance(error, (InvalidPhaseError, InsufficientFundsError)):
        status_code = 409
    elif isinstance(error, ValueError):
        status_code = 400
    else:
        status_code = 500
    return JSONResponse(content=content, status_code=status_code)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _parse_amount(value: Any, field: str) -> Decimal | None:
    """Parse an optional positive, finite amount."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid decimal for {field}: {value}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"{field} must be a positive number, got {value}")
    return amount


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Run phase, deposit baseline, live balance and settlement preview."""
    orchestrator = request.app.state.orchestrator
    status = await orchestrator.get_status()
    return JSONResponse(content=_decimal_to_str(status))


@router.get("/address")
async def get_address(request: Request) -> JSONResponse:
    """Custodial address deposits must be sent to."""
    orchestrator = request.app.state.orchestrator
    return JSONResponse(content={"address": orchestrator.custodial_address})


@router.post("/wallet")
async def register_wallet(request: Request) -> JSONResponse:
    """Register the depositor address. Body: {"address": "0x..."}."""
    body = await _json_body(request)
    if body is None:
        return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)
    if not body.get("address"):
        return JSONResponse(
            content={"error": "Missing required field: address"}, status_code=400
        )

    orchestrator = request.app.state.orchestrator
    try:
        address = await orchestrator.register_depositor(str(body["address"]))
    except (CarryBotError, ValueError) as e:
        log.warning("wallet_registration_failed", error=str(e))
        return _error_response(e)

    log.info("wallet_registered_via_api", address=address)
    return JSONResponse(content={"address": address})


@router.post("/close")
async def close_position(request: Request) -> JSONResponse:
    """Unwind all legs and pay out.

    Optional body fields: payout_address, spot_amount, direction.
    """
    body = await _json_body(request) or {}
    orchestrator = request.app.state.orchestrator

    try:
        spot_amount = _parse_amount(body.get("spot_amount"), "spot_amount")
        direction = Direction(body["direction"]) if body.get("direction") else None
        outcome = await orchestrator.request_close(
            payout_address=body.get("payout_address"),
            spot_amount=spot_amount,
            expected_direction=direction,
        )
    except (CarryBotError, ValueError) as e:
        log.error("close_request_failed", error=str(e))
        return _error_response(e)

    quote = outcome.settlement.quote
    return JSONResponse(
        content=_decimal_to_str({
            "executed": outcome.close.executed,
            "skipped": outcome.close.skipped,
            "recipient": outcome.settlement.recipient,
            "reference": outcome.settlement.receipt.reference,
            "balance": quote.current_balance,
            "tracked_deposit": quote.tracked_deposit,
            "profit": quote.profit,
            "fee": quote.fee,
            "payout": quote.payout,
        })
    )


@router.post("/retry")
async def retry_open(request: Request) -> JSONResponse:
    """Resume a failed open at the step that failed."""
    orchestrator = request.app.state.orchestrator
    try:
        result = await orchestrator.retry()
    except CarryBotError as e:
        log.error("retry_request_failed", error=str(e))
        return _error_response(e)

    return JSONResponse(
        content={
            "run_id": result.run_id,
            "batch": result.batch,
            "direction": result.direction.value if result.direction else None,
            "executed": result.executed,
            "skipped": result.skipped,
        }
    )


@router.get("/breakeven")
async def get_breakeven(request: Request, notional: str | None = None) -> JSONResponse:
    """Breakeven hold and minimum funding for both directions."""
    orchestrator = request.app.state.orchestrator
    try:
        amount = _parse_amount(notional, "notional")
    except ValueError as e:
        return _error_response(e)

    reports = await orchestrator.breakeven(amount)
    result = []
    for report in reports:
        breakeven = report.breakeven
        breakdown = report.breakdown
        result.append({
            "direction": report.plan.direction.value,
            "possible": breakeven.possible,
            "within_intended_hold": breakeven.within_intended_hold,
            "funding_pct_per_hour": report.funding_pct_per_hour,
            "income_pct_per_hour": report.income_pct_per_hour,
            "net_funding_per_hour": breakeven.net_funding_per_hour,
            "trading_cost_pct": breakeven.trading_cost_pct,
            "hold_hours": breakeven.hold_hours,
            "hold_days": breakeven.hold_days,
            "min_funding_pct_per_hour": breakdown.total_pct_per_hour,
            "borrow_apr": report.borrow_apr,
            "projected_borrow_interest": report.projected_borrow_interest,
        })
    return JSONResponse(content=_decimal_to_str(result))


@router.get("/deposits")
async def get_deposits(request: Request, limit: int = 50) -> JSONResponse:
    """Matched deposits, newest first."""
    orchestrator = request.app.state.orchestrator
    deposits = await orchestrator.list_deposits(limit)
    return JSONResponse(content=_decimal_to_str(deposits))


@router.post("/paper/deposit")
async def paper_deposit(request: Request) -> JSONResponse:
    """Paper mode only: simulate a deposit from the registered depositor. Body: {"amount": "100"}."""
    if not request.app.state.paper_mode:
        return JSONResponse(
            content={"error": "Simulated deposits are only available in paper mode"},
            status_code=404,
        )
    body = await _json_body(request)
    if body is None:
        return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)

    orchestrator = request.app.state.orchestrator
    try:
        amount = _parse_amount(body.get("amount"), "amount")
        if amount is None:
            raise ValueError("Missing required field: amount")
        event = await orchestrator.simulate_deposit(amount)
    except (CarryBotError, ValueError) as e:
        return _error_response(e)

    log.info("paper_deposit_queued", version=event.version, amount=str(event.amount))
    return JSONResponse(
        content={"version": event.version, "amount": str(event.amount)}
    )
