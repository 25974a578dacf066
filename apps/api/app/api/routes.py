from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import custom_fields_router, custom_values_router, qualification_router
from app.metrics import generate_metrics_payload, metrics_content_type

METRICS_READ_ROLE = "system.metrics.read"

system_router = APIRouter(tags=["system"])


@system_router.get("/health")
def health() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "service": settings.app_name, "environment": settings.app_env}


@system_router.get("/metrics")
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    # Disabled metrics look like a missing route.
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_READ_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_READ_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


router = APIRouter()
for crm_router in (custom_fields_router, custom_values_router, qualification_router):
    router.include_router(crm_router)
router.include_router(system_router)
