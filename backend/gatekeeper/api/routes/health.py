"""
Health check route.

Unauthenticated and allow-listed by the access gate.
"""

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness probe."""
    return {"status": "ok"}
