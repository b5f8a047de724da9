from __future__ import annotations

import secrets
from pathlib import Path

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from loguru import logger

from deepresearch.api.deps import (
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    catalog_dep,
    has_valid_session,
    settings_dep,
)
from deepresearch.config import ModelCatalog, Settings

router = APIRouter(tags=["auth"])

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[2] / "templates"))


def _login_page(request: Request, error: str | None = None, status_code: int = 200) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "login.html",
        {"error": error},
        status_code=status_code,
    )


@router.get("/", response_class=HTMLResponse)
async def index(
    request: Request,
    settings: Settings = Depends(settings_dep),
    catalog: ModelCatalog = Depends(catalog_dep),
):
    """Research page for signed-in clients, login form otherwise."""
    if not has_valid_session(request, settings):
        return _login_page(request)
    response = templates.TemplateResponse(
        request,
        "index.html",
        {
            "models": catalog.models,
            "default_model": catalog.default.id,
            "daily_limit": settings.daily_request_limit,
        },
    )
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return response


@router.post("/login", response_class=HTMLResponse)
async def login(
    request: Request,
    token: str = Form(""),
    settings: Settings = Depends(settings_dep),
):
    if not token or not secrets.compare_digest(token.encode(), settings.session_secret_token.encode()):
        logger.warning("Rejected login attempt with invalid token")
        return _login_page(request, error="Invalid access token.", status_code=401)

    response = RedirectResponse(url="/", status_code=303)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="strict",
        secure=settings.is_production,
    )
    return response


@router.post("/logout")
async def logout(settings: Settings = Depends(settings_dep)):
    response = RedirectResponse(url="/", status_code=303)
    response.delete_cookie(
        SESSION_COOKIE,
        httponly=True,
        samesite="strict",
        secure=settings.is_production,
    )
    return response
