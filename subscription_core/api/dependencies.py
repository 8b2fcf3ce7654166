"""Request dependencies shared by the API routers."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from subscription_core.services.billing_gateway import QiwiBillingGateway
from subscription_core.services.subscription_service import SubscriptionService


def get_service(request: Request) -> SubscriptionService:
    return request.app.state.components.service


def get_gateway(request: Request) -> QiwiBillingGateway:
    return request.app.state.components.gateway


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Resolved user identity, delivered by the authentication layer in front of us."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=401,
            detail={
                "error": "Unauthenticated",
                "message": "Missing X-User-Id header",
            },
        )
    return x_user_id.strip()
