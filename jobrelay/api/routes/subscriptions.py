"""
Push subscription routes.

Registers the delivery endpoints the notify job type sends to.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from jobrelay.api.dependencies import EngineDep
from jobrelay.constants import API_V1_PREFIX
from jobrelay.types.api import RegisterSubscriptionRequest, SubscriptionResponse

router = APIRouter(prefix=f"{API_V1_PREFIX}/subscriptions", tags=["Subscriptions"])


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a push endpoint",
)
async def register_subscription(
    request: RegisterSubscriptionRequest,
    engine: EngineDep,
) -> SubscriptionResponse:
    subscription = await engine.subscriptions.register(
        recipient=request.recipient,
        endpoint=request.endpoint,
        p256dh=request.keys.p256dh,
        auth=request.keys.auth,
        user_agent=request.user_agent,
    )
    return SubscriptionResponse.model_validate(subscription)


@router.delete(
    "/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a push endpoint",
)
async def remove_subscription(subscription_id: UUID, engine: EngineDep) -> None:
    removed = await engine.subscriptions.remove([subscription_id])
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
