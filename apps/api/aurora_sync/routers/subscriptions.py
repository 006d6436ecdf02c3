"""
Customer-initiated subscription changes and administrative revocation.

Billing-provider driven changes arrive through the webhook router; these
endpoints cover actions taken from the account portal or by support.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import get_services, require_admin_token
from ..schemas.api import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    LicenseResponse,
    ReactivateSubscriptionRequest,
    RevokeLicenseRequest,
    SubscriptionResponse,
    TransitionResponse,
)
from ..services.container import Services
from ..services.license_state_service import TransitionResult

router = APIRouter(
    prefix="/api/v1",
    tags=["Subscriptions"],
    responses={
        404: {"description": "Subscription or license not found"},
        409: {"description": "Transition not allowed from the current state"},
    },
)


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription) if result.subscription else None,
        license=LicenseResponse.model_validate(result.license),
        previous_license_key=result.previous_license.license_key if result.previous_license else None,
        event_ids=result.event_ids,
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=TransitionResponse)
def cancel_subscription(
    subscription_id: int,
    body: CancelSubscriptionRequest,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    if body.cancel_immediately:
        result = services.state.deactivate(subscription_id, body.reason)
    else:
        result = services.state.schedule_cancellation(subscription_id, body.reason)
    return _transition_response(result)


@router.post("/subscriptions/{subscription_id}/reactivate", response_model=TransitionResponse)
def reactivate_subscription(
    subscription_id: int,
    body: ReactivateSubscriptionRequest,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    return _transition_response(services.state.reactivate(subscription_id, body.reason))


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=TransitionResponse)
def change_plan(
    subscription_id: int,
    body: ChangePlanRequest,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    """Upgrade, downgrade or switch billing cycle. May reissue the license key."""
    result = services.state.change_plan(
        subscription_id,
        body.plan_id,
        body.billing_cycle,
        reason=body.reason,
    )
    return _transition_response(result)


@router.get("/licenses/{license_key}", response_model=LicenseResponse)
def get_license(license_key: str, services: Services = Depends(get_services)) -> LicenseResponse:
    return LicenseResponse.model_validate(services.state.get_license(license_key))


@router.post("/licenses/{license_key}/revoke", response_model=TransitionResponse)
def revoke_license(
    license_key: str,
    body: RevokeLicenseRequest,
    admin: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> TransitionResponse:
    return _transition_response(services.state.revoke(license_key, body.reason, actor_id=admin))
