# api/routes/callbacks.py
"""Inbound deliveries from the workflow engine, verified like outbound callbacks."""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request

from config.settings import GatewaySettings
from core.exceptions import SignatureError, ValidationError
from orchestration.callbacks import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature

from ..dependencies import get_settings
from ..security import read_body

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/callback", tags=["callbacks"])


@router.post("/workflow")
async def workflow_callback(request: Request, settings: GatewaySettings = Depends(get_settings)) -> dict[str, Any]:
    # The signature covers the exact bytes sent, so the body is verified before parsing.
    body = await read_body(request, settings.MAX_BODY_BYTES)
    signature = request.headers.get(SIGNATURE_HEADER)
    timestamp = request.headers.get(TIMESTAMP_HEADER)
    if not signature or not timestamp:
        raise SignatureError("Missing signature or timestamp")
    if not verify_signature(body, signature, timestamp, settings.CALLBACK_SECRET, settings.CALLBACK_MAX_SKEW_SECONDS):
        logger.warning("Rejected workflow callback with invalid signature", client=request.client.host if request.client else None)
        raise SignatureError("Invalid signature")
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Malformed callback payload") from e

    request_id = data.get("requestId") if isinstance(data, dict) else None
    logger.info("Workflow callback received", request_id=request_id)
    return {"status": "received", "data": data}
