"""
Web Server Routes
=================

Serves the pages users land on around the login flow, on its own listener:

- GET /site/homepage     : Landing page
- GET /site/after_logout : Page shown after logout
- /site/assets/*         : Static assets (themes, images, stylesheets)

Templates are looked up in the configured template directories first, then
in the bundled defaults, so deployments can override any page by name.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from ..config import Settings

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).resolve().parent
DEFAULT_TEMPLATE_DIR = WEB_DIR / "templates" / "default"
DEFAULT_ASSETS_DIR = WEB_DIR / "assets"

HOMEPAGE_PATH = "/site/homepage"
AFTER_LOGOUT_PATH = "/site/after_logout"
ASSETS_PATH = "/site/assets"

TMPL_HOMEPAGE = "homepage.html"
TMPL_AFTER_LOGOUT = "after_logout.html"


def resolve_url_ref(url: str, ref: str) -> str:
    """Resolve ref against url, as a browser would."""
    return urljoin(url, ref)


def build_templates(template_paths: List[str]) -> Jinja2Templates:
    directories = [Path(p) for p in template_paths] + [DEFAULT_TEMPLATE_DIR]
    templates = Jinja2Templates(directory=directories)
    templates.env.globals["resolve_url_ref"] = resolve_url_ref
    return templates


def create_web_router(templates: Jinja2Templates, context: Dict[str, Any]) -> APIRouter:
    router = APIRouter(tags=["web"])

    @router.get(HOMEPAGE_PATH)
    async def homepage(request: Request):
        return templates.TemplateResponse(request, TMPL_HOMEPAGE, dict(context))

    @router.get(AFTER_LOGOUT_PATH)
    async def after_logout(request: Request):
        return templates.TemplateResponse(request, TMPL_AFTER_LOGOUT, dict(context))

    return router


def create_web_app(settings: Settings, assets_dir: Optional[Path] = None) -> FastAPI:
    """
    Build the web server application.

    Args:
        settings: Application settings
        assets_dir: Directory served under /site/assets (defaults to the bundled assets)
    """
    context = {
        "frontend": settings.template_context,
        "provider_url": settings.OIDC_PROVIDER,
        "client_name": settings.WEB_SERVER_CLIENT_NAME,
        "theme_url": settings.theme_url,
    }
    templates = build_templates(settings.template_paths_list)

    app = FastAPI(
        title="AuthService Web Server",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "POST"],
    )
    app.include_router(create_web_router(templates, context))
    app.mount(
        ASSETS_PATH,
        StaticFiles(directory=assets_dir or DEFAULT_ASSETS_DIR),
        name="assets",
    )

    logger.info(
        "Web server configured",
        extra={"template_paths": settings.template_paths_list, "theme_url": settings.theme_url},
    )
    return app
