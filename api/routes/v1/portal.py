"""
api/routes/v1/portal.py -- Landing endpoints for the two portal surfaces.

  GET /api/v1/portal/home   -- client surface; administrators get 303 to the admin landing path
  GET /api/v1/admin/home    -- admin surface; non-admins get 403 forbidden

Both require a verified email (403 email_unverified otherwise). The route
guard decides; these handlers only describe who got in.
"""

from fastapi import APIRouter, Depends

from api.models import SurfaceResponse
from auth.dependencies import require_admin, require_client
from auth.identity import Identity

router = APIRouter()


@router.get("/portal/home", response_model=SurfaceResponse)
def client_home(identity: Identity = Depends(require_client)) -> SurfaceResponse:
    return SurfaceResponse(surface="client", user_id=identity.user_id, email=identity.email, is_admin=False)


@router.get("/admin/home", response_model=SurfaceResponse)
def admin_home(identity: Identity = Depends(require_admin)) -> SurfaceResponse:
    return SurfaceResponse(surface="admin", user_id=identity.user_id, email=identity.email, is_admin=True)
