"""Centralized settings for the road network engine."""
from __future__ import annotations

from typing import Dict, Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "ROADNET_"}

    # "prod" keeps nearest-edge results cached longer
    env: Literal["dev", "prod"] = "dev"
    log_level: str = "INFO"

    # Ratings store; the PostGIS road table is only used with postgresql URLs
    database_url: str = "sqlite:///./roadnet.sqlite"
    db_statement_timeout_ms: int = 30000
    # libpq connect_timeout, seconds
    db_connect_timeout_s: int = 5

    # Redis; empty string means disabled (graceful fallback)
    redis_url: str = ""

    # Scope resolution; empty secret means only the X-Scope-Id header is read
    jwt_secret: str = ""
    jwt_scope_claim: str = "scope_id"

    # Geometry sources in fallback order ("database+file", "file", ...)
    geometry_sources: str = "database+file"

    # Dataset files (.gpkg / .shp), one per tenant-mapped area
    dataset_dir: str = "./map-files"
    dataset_scopes: Dict[str, str] = {}   # filename -> scope id
    multiline_policy: Literal["first", "longest", "all"] = "first"
    file_load_timeout_s: float = 120.0
    download_timeout_s: int = 120
    file_workers: int = 2

    # Segmentation
    segment_length_m: float = 50.0
    segment_match_tolerance_m: float = 10.0

    # Nearest-edge lookups
    nearest_default_radius_m: float = 200.0
    nearest_cache_size: int = 1000
    nearest_ttl_dev_s: int = 300       # 5 min
    nearest_ttl_prod_s: int = 900      # 15 min
    nearest_candidate_cap: int = 200
    nearest_early_exit_m: float = 5.0

    # Tiles
    tile_render_timeout_s: float = 15.0
    tile_cache_ttl_s: int = 600
    tile_extent: int = 4096

    # Read model
    min_history_entries: int = 3
    map_default_months: int = 6

    @property
    def nearest_ttl_s(self) -> int:
        return self.nearest_ttl_prod_s if self.env == "prod" else self.nearest_ttl_dev_s


settings = Settings()
