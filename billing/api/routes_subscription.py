from fastapi import APIRouter, Depends
from billing.api.deps import get_current_user_id, get_subscription_service
from billing.core.plans import ADDONS, PLANS
from billing.schemas.subscription import SubscriptionResponse, SubscriptionStatusResponse
from billing.services.subscription_service import SubscriptionService

router = APIRouter(tags=["subscription"])


@router.get("/subscription/status", response_model=SubscriptionStatusResponse)
async def subscription_status(user_id: str = Depends(get_current_user_id),
                              subscription_service: SubscriptionService = Depends(get_subscription_service)):
    subscription = await subscription_service.get_active_subscription(user_id)
    return SubscriptionStatusResponse(
        has_active_subscription=subscription is not None,
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
    )


@router.get("/plans")
async def list_plans():
    return {
        "plans": {plan_id: plan.model_dump() for plan_id, plan in PLANS.items()},
        "addons": {addon_id: addon.model_dump() for addon_id, addon in ADDONS.items()},
    }
