"""
FastAPI dependencies shared by the routers.
"""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.calls.factory import CallDependencies, CallServices, build_call_services
from companion_calls.config import Settings, get_settings
from companion_calls.shared.database import get_db_session
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


def get_call_dependencies(request: Request) -> CallDependencies:
    """Process-wide collaborators built in ``create_app``."""
    return request.app.state.call_deps


def get_call_services(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    deps: Annotated[CallDependencies, Depends(get_call_dependencies)],
) -> CallServices:
    return build_call_services(session, deps)


async def require_internal_secret(
    settings: Annotated[Settings, Depends(get_settings)],
    x_webhook_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Guard for internal endpoints. An unset secret disables the check."""
    expected = settings.internal_api_secret
    if not expected:
        logger.warning("Internal API secret not set; skipping auth")
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("Invalid webhook secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
