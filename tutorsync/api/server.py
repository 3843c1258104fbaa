"""FastAPI server exposing canonical settings.

Routes:
    GET   /settings/{entity_id}   assembled canonical settings
    POST  /settings/{entity_id}   write a partial canonical payload
    PATCH /settings/{entity_id}   same as POST
    GET   /capabilities           addon capability status
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException

from tutorsync import __version__
from tutorsync.config import SyncConfig
from tutorsync.errors import InvalidSettingValue, StoreError, UnknownEntity
from tutorsync.service import SettingsService, create_service
from tutorsync.store import EntityStore

logger = logging.getLogger(__name__)


def create_app(
    store: Optional[EntityStore] = None,
    config: Optional[SyncConfig] = None,
    service: Optional[SettingsService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or SyncConfig()
    service = service or create_service(config, store)

    app = FastAPI(
        title="tutorsync",
        version=__version__,
        redoc_url=None,
    )
    app.state.service = service

    def _update(entity_id: int, payload: Dict[str, Any]) -> dict:
        try:
            report = service.update(entity_id, payload)
        except UnknownEntity as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidSettingValue as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreError as e:
            logger.warning(f"Settings write for {entity_id} failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "success": report.success,
            "written": report.written,
            "warnings": report.warnings,
            "settings": service.get(entity_id),
        }

    @app.get("/settings/{entity_id}")
    async def get_settings(entity_id: int):
        """Canonical settings for an entity."""
        try:
            return service.get(entity_id)
        except UnknownEntity as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/settings/{entity_id}")
    async def post_settings(entity_id: int, payload: Dict[str, Any] = Body(...)):
        """Write a partial canonical payload."""
        return _update(entity_id, payload)

    @app.patch("/settings/{entity_id}")
    async def patch_settings(entity_id: int, payload: Dict[str, Any] = Body(...)):
        """Write a partial canonical payload."""
        return _update(entity_id, payload)

    @app.get("/capabilities")
    async def capabilities():
        """Status of every known addon capability."""
        return service.engine.capabilities.to_dict()

    return app
