from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.accounts.api import auth_router, invitations_router, password_reset_router, users_router
from app.api.deps import get_current_user
from app.core.auth import ActorUser
from app.core.config import get_settings
from app.crm.api import (
    admin_router,
    analytics_router,
    appointments_router,
    calendar_router,
    crews_router,
    cron_router,
    dashboard_router,
    jobs_router,
    leads_router,
    notifications_router,
    public_router,
    quotes_router,
    search_router,
    tasks_router,
)
from app.messaging.api import router as messaging_router
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(password_reset_router)
router.include_router(invitations_router)
router.include_router(leads_router)
router.include_router(public_router)
router.include_router(appointments_router)
router.include_router(quotes_router)
router.include_router(crews_router)
router.include_router(jobs_router)
router.include_router(tasks_router)
router.include_router(notifications_router)
router.include_router(cron_router)
router.include_router(admin_router)
router.include_router(dashboard_router)
router.include_router(analytics_router)
router.include_router(search_router)
router.include_router(calendar_router)
router.include_router(messaging_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
