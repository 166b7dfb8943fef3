"""kie.ai webhook endpoint for generation completion callbacks.

HTTP Status Codes:
    200: Callback accepted (whether or not it changed the record, so the
         provider does not redeliver needlessly)
    400: Malformed payload (no record touched)
    404: Unknown task id (stale/foreign callback, or the worker has not stored
         the task id yet; the provider's own webhook retry covers the race)
    500: Internal server error
"""

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from genmedia.api.dependencies import get_uow_factory
from genmedia.services.exceptions import GenerationNotFoundError
from genmedia.services.webhook_reconciler import (
    WebhookPayloadError,
    parse_webhook_payload,
    reconcile_webhook,
)

logger = structlog.get_logger()
router = APIRouter()


@router.post("/webhook")
async def receive_kie_webhook(request: Request, uow_factory=Depends(get_uow_factory)):
    """Receive a kie.ai task callback and reconcile it with the stored generation.

    Payload:
        {"code": 200, "data": {"taskId": "...", "state": "success",
         "resultJson": "{\\"resultUrls\\": [\\"https://...\\"]}"}, "msg": "..."}
    """
    raw_body = await request.body()

    try:
        payload = parse_webhook_payload(raw_body)
    except WebhookPayloadError as e:
        logger.error("webhook.invalid_payload", error=str(e), details=e.details)
        content: dict = {"success": False, "error": "Invalid webhook payload"}
        if e.details:
            content["details"] = e.details
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)

    logger.info(
        "webhook.received",
        provider_job_id=payload.data.task_id,
        provider_state=payload.data.state,
        code=payload.code,
    )

    try:
        result = await reconcile_webhook(payload, uow_factory)
    except GenerationNotFoundError:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "error": "Generation not found"},
        )
    except Exception as e:
        logger.error(
            "webhook.processing_error",
            provider_job_id=payload.data.task_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Internal server error"},
        )

    logger.info(
        "webhook.processed",
        generation_id=str(result.generation_id),
        status=result.status.value,
        changed=result.changed,
    )
    return {"success": True}
