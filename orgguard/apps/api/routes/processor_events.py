from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_db
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.core.config import get_settings
from orgguard.core.errors import ConfigurationError, InvalidSignatureError
from orgguard.services.payments import verify_processor_event
from orgguard.services.subscriptions import ProcessorUpdate, apply_processor_update


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class ProcessorEventRequest(BaseModel):
    # Normalised subscription event forwarded by the processor integration.
    event_id: str | None = None
    event_type: str | None = None
    status: str
    organisation_id: str | None = None
    customer_ref: str | None = None
    plan_id: str | None = None
    trial_ends_at: datetime | None = None
    subscription_ends_at: datetime | None = None


class ProcessorEventResponse(BaseModel):
    organisation_id: str
    subscription_status: str
    plan_id: str | None


@router.post(
    "/processor-events",
    response_model=SuccessEnvelope[ProcessorEventResponse] | ProcessorEventResponse,
)
async def receive_processor_event(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> ProcessorEventResponse:
    # Verify against the raw body before parsing anything.
    body = await request.body()
    signature = request.headers.get(get_settings().processor_signature_header)
    try:
        verify_processor_event(body, signature)
    except ConfigurationError as exc:
        logger.error("processor_event_rejected reason=not_configured", exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "UNAVAILABLE", "message": "Processor events are not configured"},
        ) from exc
    except InvalidSignatureError as exc:
        logger.warning("processor_event_rejected reason=invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_SIGNATURE", "message": str(exc)},
        ) from exc

    try:
        event = ProcessorEventRequest.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "REQUEST_VALIDATION_ERROR",
                "message": "Invalid processor event",
                "errors": exc.errors(include_url=False, include_context=False),
            },
        ) from exc

    logger.info(
        "processor_event_received event_id=%s event_type=%s status=%s",
        event.event_id,
        event.event_type,
        event.status,
    )
    organisation = unwrap(
        await apply_processor_update(
            db,
            ProcessorUpdate(
                status=event.status,
                organisation_id=event.organisation_id,
                customer_ref=event.customer_ref,
                plan_id=event.plan_id,
                trial_ends_at=event.trial_ends_at,
                subscription_ends_at=event.subscription_ends_at,
            ),
        )
    )
    return ProcessorEventResponse(
        organisation_id=organisation.id,
        subscription_status=organisation.subscription_status,
        plan_id=organisation.current_plan_id,
    )
