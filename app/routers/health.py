from fastapi import APIRouter, Depends

from app.dependencies import get_registry
from app.schemas.otp import HealthResponse
from app.services.connections import ConnectionRegistry

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health(registry: ConnectionRegistry = Depends(get_registry)) -> HealthResponse:
    return HealthResponse(connections=registry.active_count())
