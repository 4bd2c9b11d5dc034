from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response

from roadnet.scope import get_scope
from roadnet.services import get_renderer
from roadnet.tiles.renderer import TileRenderer

router = APIRouter(prefix="/tiles", tags=["tiles"])

MVT_MEDIA_TYPE = "application/vnd.mapbox-vector-tile"


@router.get("/roads/{z}/{x}/{y}.pbf")
def road_tile(
    z: int,
    x: int,
    y: int,
    scope: Optional[str] = Depends(get_scope),
    renderer: TileRenderer = Depends(get_renderer),
):
    data = renderer.render(z, x, y, scope)
    if not data:
        return Response(status_code=204)
    return Response(
        content=data,
        media_type=MVT_MEDIA_TYPE,
        headers={"Cache-Control": "public, max-age=300"},
    )
