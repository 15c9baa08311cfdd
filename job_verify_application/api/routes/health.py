"""Health check endpoints."""

from fastapi import APIRouter

from ...config import get_config_env

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "env": get_config_env()}
