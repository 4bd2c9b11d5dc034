from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import requests
from rich.console import Console
from rich.table import Table

from roadnet.config import settings
from roadnet.core import segmenter
from roadnet.core.aggregator import RatingAggregator
from roadnet.core.colors import color_for
from roadnet.errors import RoadnetError, SourceUnavailable
from roadnet.geo import datasets
from roadnet.sources.resolver import build_resolver
from roadnet.storage.db import init_db

console = Console()


def _cmd_nearest(args) -> int:
    resolver = build_resolver(args.sources)
    try:
        result = resolver.resolve(args.lat, args.lng, args.radius, args.scope)
    finally:
        resolver.close()
    if result is None:
        console.print(f"No road within {args.radius:g} m of {args.lat}, {args.lng}")
        return 1

    table = Table(title="Nearest road edge")
    table.add_column("Edge")
    table.add_column("Name")
    table.add_column("Class")
    table.add_column("Distance m")
    table.add_column("Vertices")
    table.add_column("Source")
    table.add_row(
        result.road_id,
        result.name or "",
        result.road_class or "",
        f"{result.distance_m:.1f}",
        str(len(result.geometry)),
        result.source or "",
    )
    console.print(table)
    return 0


def _cmd_segments(args) -> int:
    resolver = build_resolver(args.sources)
    try:
        geom = resolver.get_geometries([args.edge_id]).get(args.edge_id)
    finally:
        resolver.close()
    if geom is None:
        console.print(f"Edge {args.edge_id} not found")
        return 1

    segs = segmenter.split(args.edge_id, geom, args.length)
    table = Table(title=f"{args.edge_id}: {segmenter.edge_length_m(geom):.1f} m, {len(segs)} segment(s)")
    table.add_column("Segment")
    table.add_column("Start m")
    table.add_column("End m")
    table.add_column("Length m")
    table.add_column("Vertices")
    for s in segs:
        table.add_row(s.segment_id, f"{s.start_distance_m:.1f}", f"{s.end_distance_m:.1f}",
                      f"{s.length_m:.1f}", str(len(s.geometry)))
    console.print(table)
    return 0


def _cmd_datasets(args) -> int:
    table = Table(title=f"Dataset files in {settings.dataset_dir}")
    table.add_column("File")
    table.add_column("Scope")
    for ds in datasets.discover(settings.dataset_dir, settings.dataset_scopes):
        table.add_row(ds.name, ds.scope_id or "(unmapped)")
    console.print(table)
    return 0


def _cmd_download(args) -> int:
    try:
        path = datasets.download_dataset(
            args.url, args.filename, settings.dataset_dir, timeout_s=settings.download_timeout_s
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        return 2
    console.print(f"Saved: {path.resolve()}")
    return 0


def _cmd_import(args) -> int:
    from roadnet.storage.importer import import_datasets

    counts = import_datasets(only_mapped=not args.include_unmapped)
    table = Table(title="Imported road edges")
    table.add_column("File")
    table.add_column("Edges")
    for name, n in counts.items():
        table.add_row(name, str(n))
    console.print(table)
    return 0


def _cmd_rebuild(args) -> int:
    init_db()
    report = RatingAggregator().rebuild(args.scope)
    console.print(f"Scope {args.scope}: {report.ratings} rating(s) rebuilt, {report.removed} removed")
    return 0


def _cmd_color(args) -> int:
    for v in args.values:
        console.print(f"{v:>6}  [on {color_for(v)}]      [/]  {color_for(v)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="roadnet", description="Road network engine tools")
    ap.add_argument("--log-level", default=settings.log_level)
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("nearest", help="Nearest road edge to a point")
    p.add_argument("lat", type=float)
    p.add_argument("lng", type=float)
    p.add_argument("--radius", type=float, default=settings.nearest_default_radius_m)
    p.add_argument("--scope", default=None)
    p.add_argument("--sources", default=settings.geometry_sources, help="e.g. database+file")
    p.set_defaults(func=_cmd_nearest)

    p = sub.add_parser("segments", help="Split an edge into fixed-length segments")
    p.add_argument("edge_id")
    p.add_argument("--length", type=float, default=settings.segment_length_m)
    p.add_argument("--sources", default=settings.geometry_sources)
    p.set_defaults(func=_cmd_segments)

    p = sub.add_parser("datasets", help="List dataset files and their scopes")
    p.set_defaults(func=_cmd_datasets)

    p = sub.add_parser("download-dataset", help="Fetch a GIS file into the dataset directory")
    p.add_argument("url")
    p.add_argument("filename")
    p.set_defaults(func=_cmd_download)

    p = sub.add_parser("import-datasets", help="Load dataset files into the PostGIS roads table")
    p.add_argument("--include-unmapped", action="store_true")
    p.set_defaults(func=_cmd_import)

    p = sub.add_parser("rebuild", help="Recompute current ratings from history")
    p.add_argument("scope")
    p.set_defaults(func=_cmd_rebuild)

    p = sub.add_parser("color", help="Show the map colour of eIRI values")
    p.add_argument("values", type=float, nargs="+")
    p.set_defaults(func=_cmd_color)
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [roadnet] %(levelname)s %(name)s: %(message)s",
    )
    try:
        code = args.func(args)
    except SourceUnavailable as e:
        console.print(f"[red]Road data unavailable:[/] {e}")
        code = 3
    except RoadnetError as e:
        console.print(f"[red]Error:[/] {e}")
        code = 2
    except requests.RequestException as e:
        console.print(f"[red]Download failed:[/] {e}")
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
