"""CORS configuration for the SiteChat API.

The chat endpoints are called from widgets embedded on customer sites, so
the default allows any origin without credentials. Origins come from the
running service settings, which only exist once the app has started.
"""

import logging
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logger = logging.getLogger(__name__)

DEFAULT_ORIGINS = ["*"]


def build_cors_middleware(app, origins: List[str]) -> CORSMiddleware:
    allow_any = not origins or "*" in origins
    logger.info(f"CORS configured for origins: {'*' if allow_any else origins}")
    return CORSMiddleware(
        app,
        allow_origins=["*"] if allow_any else origins,
        allow_credentials=not allow_any,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Admin-Token"],
        max_age=600,
    )


class SettingsCORSMiddleware:
    """ASGI middleware applying ``AppSettings.cors_origins`` of the running services."""

    def __init__(self, app):
        self.app = app
        self._origins: Optional[List[str]] = None
        self._cors: Optional[CORSMiddleware] = None

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origins = self._configured_origins(scope)
        if self._cors is None or origins != self._origins:
            self._cors = build_cors_middleware(self.app, origins)
            self._origins = origins
        await self._cors(scope, receive, send)

    @staticmethod
    def _configured_origins(scope) -> List[str]:
        application = scope.get("app")
        services = getattr(application.state, "services", None) if application is not None else None
        if services is None:
            return DEFAULT_ORIGINS
        return list(services.settings.cors_origins)


def setup_cors(app: FastAPI) -> None:
    app.add_middleware(SettingsCORSMiddleware)
