"""
Gateway webhooks.

The gateway retries any callback that does not get a 200, so these routes
acknowledge with `{ResultCode, ResultDesc}` whatever happens internally.
"""

import logging

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from payments import apply_callback

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        logger.error("M-Pesa webhook body is not valid JSON")
        return None


@router.post("/api/mpesa/callback")
@router.post("/api/wallet/mpesa/callback")
@router.post("/api/orders/mpesa/callback")
async def mpesa_callback(request: Request):
    payload = await _read_json(request)
    logger.info("M-Pesa callback received: %s", payload)
    try:
        db = request.app.state.db
        if db is None:
            raise RuntimeError("Database not available")
        mpesa = request.app.state.mpesa
        result = mpesa.handle_callback(payload)
        outcome = await run_in_threadpool(apply_callback, db, result)
        logger.info("M-Pesa callback for %s handled: %s", result.checkout_request_id, outcome)
    except Exception:
        logger.exception("M-Pesa callback processing failed")
    return {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/api/mpesa/timeout")
@router.post("/api/wallet/mpesa/timeout")
async def mpesa_timeout(request: Request):
    payload = await _read_json(request)
    logger.warning("M-Pesa timeout received: %s", payload)
    try:
        db = request.app.state.db
        if db is not None and isinstance(payload, dict) and "Body" in payload:
            result = request.app.state.mpesa.handle_callback(payload)
            await run_in_threadpool(apply_callback, db, result)
    except Exception:
        logger.exception("M-Pesa timeout processing failed")
    return {"ResultCode": 0, "ResultDesc": "Timeout acknowledged"}
