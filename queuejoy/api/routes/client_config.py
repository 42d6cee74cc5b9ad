"""Client Config API Routes - configuration for the static consoles"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import Response

from ..deps import get_database, get_settings_dep
from ...config.settings import Settings
from ...repositories.rtdb_client import RealtimeDatabase
from ...services.client_config_service import ClientConfigService, render_env_js

router = APIRouter()


@router.get("/env")
async def env(settings: Settings = Depends(get_settings_dep)) -> Response:
    return Response(
        content=render_env_js(settings),
        media_type="application/javascript",
        headers={"Cache-Control": "no-store, max-age=0"},
    )


@router.get("/get-firebase-config")
async def get_firebase_config(
    slug: Optional[str] = Query(None),
    db: RealtimeDatabase = Depends(get_database),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    return await ClientConfigService(db, settings).get_firebase_config(slug)


@router.post("/get-firebase-config")
async def get_firebase_config_post(
    body: Optional[Dict[str, Any]] = Body(None),
    slug: Optional[str] = Query(None),
    db: RealtimeDatabase = Depends(get_database),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    body = body or {}
    return await ClientConfigService(db, settings).get_firebase_config(body.get("slug") or slug)
