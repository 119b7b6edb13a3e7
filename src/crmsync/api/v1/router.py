"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.crmsync.api.v1 import activities, auth, campaigns, contacts, health, pipedrive

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(auth.router)
router.include_router(contacts.router)
router.include_router(campaigns.router)
router.include_router(activities.router)
router.include_router(pipedrive.router)
