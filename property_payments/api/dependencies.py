"""FastAPI dependencies shared by the routers."""
import hmac

from fastapi import HTTPException, Request, status

from property_payments.core.engine import PaymentEngine
from property_payments.monitoring.health import HealthCheck


def get_payment_engine(request: Request) -> PaymentEngine:
    return request.app.state.engine


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def require_admin_key(request: Request) -> None:
    """Reject the request unless it carries the configured admin API key."""
    settings = request.app.state.settings
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is not configured"
        )
    supplied = request.headers.get(settings.api_key_header)
    if not supplied or not hmac.compare_digest(supplied, settings.admin_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
