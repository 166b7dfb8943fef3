"""Reconcile provider completion webhooks against generation records.

Webhooks are unauthenticated, may be delivered more than once and may arrive
in any order relative to the dispatch worker. The lookup by provider task id is
the only synchronization point:

- Unknown task id: not found, nothing is created or changed.
- Terminal record (completed/failed): accepted as a no-op.
- Otherwise the mapped status is written with a compare-and-set on the status
  that was read, so concurrent deliveries cannot regress the record.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from genmedia.models.generation import GenerationStatus, can_transition
from genmedia.services.exceptions import GenerationNotFoundError

logger = structlog.get_logger(__name__)

PROVIDER_STATE_MAP: dict[str, GenerationStatus] = {
    "success": GenerationStatus.COMPLETED,
    "fail": GenerationStatus.FAILED,
    "failed": GenerationStatus.FAILED,
    "processing": GenerationStatus.PROCESSING,
}


class WebhookPayloadError(ValueError):
    """Callback body is not valid JSON or does not match the callback schema."""

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        self.details = details or []
        super().__init__(message)


class WebhookTaskData(BaseModel):
    """``data`` object of a kie.ai callback."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId", min_length=1)
    state: str
    result_json: Optional[str] = Field(default=None, alias="resultJson")
    fail_code: Optional[str] = Field(default=None, alias="failCode")
    fail_msg: Optional[str] = Field(default=None, alias="failMsg")

    @field_validator("fail_code", mode="before")
    @classmethod
    def stringify_fail_code(cls, v: Union[str, int, None]) -> Optional[str]:
        """Providers send numeric fail codes on some models."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class WebhookPayload(BaseModel):
    """kie.ai callback envelope: ``{code, data:{taskId, state, ...}, msg?}``."""

    code: int
    data: WebhookTaskData
    msg: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    """What a webhook delivery did to its generation."""

    generation_id: UUID
    status: GenerationStatus
    changed: bool


def parse_webhook_payload(raw_body: Union[bytes, str]) -> WebhookPayload:
    """Parse and structurally validate a callback body.

    Raises:
        WebhookPayloadError: Invalid JSON or schema violation (with field details)
    """
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WebhookPayloadError(f"Invalid JSON payload: {str(e)}") from e

    try:
        return WebhookPayload.model_validate(body)
    except ValidationError as e:
        details = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise WebhookPayloadError("Invalid webhook payload", details) from e


def map_provider_state(state: str) -> GenerationStatus:
    """Map a provider task state to a generation status.

    Total and deterministic: unknown states map to pending, the least
    committal status.
    """
    return PROVIDER_STATE_MAP.get(state, GenerationStatus.PENDING)


def extract_result_url(result_json: Optional[str]) -> Optional[str]:
    """Pull the first URL out of the provider's ``resultJson`` string.

    ``resultJson`` is itself a JSON document like ``{"resultUrls": ["https://..."]}``.
    Parse failures are logged and yield None; they never abort reconciliation.
    """
    if not result_json:
        return None

    try:
        result_data = json.loads(result_json)
    except (json.JSONDecodeError, TypeError) as e:
        logger.error("webhook.result_json_unparseable", error=str(e))
        return None

    if not isinstance(result_data, dict):
        logger.error("webhook.result_json_unexpected", result_type=type(result_data).__name__)
        return None

    urls = result_data.get("resultUrls")
    if not isinstance(urls, list) or not urls or not isinstance(urls[0], str):
        logger.warning("webhook.result_urls_missing")
        return None

    return urls[0]


def failure_message(data: WebhookTaskData) -> Optional[str]:
    """Provider's failure message, verbatim when present."""
    if data.fail_msg:
        return data.fail_msg
    if data.fail_code:
        return f"Generation failed (provider code {data.fail_code})"
    return None


async def reconcile_webhook(payload: WebhookPayload, uow_factory: Callable) -> ReconcileResult:
    """Apply a validated callback to the generation it refers to.

    Args:
        payload: Validated callback payload
        uow_factory: UnitOfWork factory

    Returns:
        ReconcileResult (changed=False for duplicate, stale or terminal deliveries)

    Raises:
        GenerationNotFoundError: No generation carries this provider task id
    """
    task_id = payload.data.task_id
    target = map_provider_state(payload.data.state)
    log = logger.bind(provider_job_id=task_id, provider_state=payload.data.state)

    async with await uow_factory() as uow:
        generation = await uow.generations.get_by_provider_job_id(task_id)
        if generation is None:
            log.warning("webhook.generation_not_found")
            raise GenerationNotFoundError(f"No generation for provider job {task_id}")

        log = log.bind(generation_id=str(generation.id))

        if generation.is_terminal:
            log.info("webhook.terminal_noop", status=generation.status.value)
            return ReconcileResult(generation.id, generation.status, changed=False)

        if not can_transition(generation.status, target):
            log.info(
                "webhook.stale_state_ignored",
                status=generation.status.value,
                target_status=target.value,
            )
            return ReconcileResult(generation.id, generation.status, changed=False)

        result_url = None
        error_message = None
        if target == GenerationStatus.COMPLETED:
            result_url = extract_result_url(payload.data.result_json)
        elif target == GenerationStatus.FAILED:
            error_message = failure_message(payload.data)

        changed = await uow.generations.apply_provider_status(
            generation, target, result_url=result_url, error_message=error_message
        )

        if not changed:
            # Another delivery updated the row between our read and write
            current = await uow.generations.get_by_id(generation.id)
            status = current.status if current else generation.status
            log.info("webhook.concurrent_update_noop", status=status.value)
            return ReconcileResult(generation.id, status, changed=False)

    log.info(
        "webhook.generation_updated",
        status=target.value,
        result_url=result_url,
        error_message=error_message,
    )
    return ReconcileResult(generation.id, target, changed=True)
