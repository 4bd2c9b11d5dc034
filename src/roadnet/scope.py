"""Tenant scope resolution as FastAPI dependencies.

The scope comes from the ``X-Scope-Id`` header, or, when ``jwt_secret`` is
configured, from a claim of the bearer token.  This only selects whose roads and
ratings a request sees; it is not an authorization check.
"""
from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import HTTPException, Request

from roadnet.config import settings

log = logging.getLogger(__name__)

SCOPE_HEADER = "x-scope-id"


def _extract_token(request: Request) -> Optional[str]:
    """Pull Bearer token from the Authorization header."""
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return None


def _decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        options={"verify_aud": False},
    )


async def get_scope(request: Request) -> Optional[str]:
    """FastAPI dependency: scope id, or None for unscoped requests."""
    if settings.jwt_secret:
        token = _extract_token(request)
        if token:
            try:
                payload = _decode_token(token)
            except jwt.ExpiredSignatureError:
                raise HTTPException(status_code=401, detail="Token expired")
            except jwt.InvalidTokenError as e:
                raise HTTPException(status_code=401, detail=f"Invalid token: {e}")
            claim = payload.get(settings.jwt_scope_claim)
            if claim:
                return str(claim)

    header = request.headers.get(SCOPE_HEADER, "").strip()
    return header or None


async def require_scope(request: Request) -> str:
    """FastAPI dependency: like ``get_scope`` but rejects unscoped writes."""
    scope = await get_scope(request)
    if not scope:
        raise HTTPException(status_code=400, detail="Missing scope (X-Scope-Id header or token claim)")
    return scope
