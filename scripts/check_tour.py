#!/usr/bin/env python3
import argparse
import asyncio
import csv
import sys
from pathlib import Path

from panotour.errors import NotFoundError, ValidationError
from panotour.graph import TourGraph
from panotour.repository import SqliteTourRepository


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="List a tour's scenes and check its hotspot graph"
    )
    parser.add_argument("tour_id", help="Tour id to check")
    parser.add_argument(
        "--db",
        default="data/panotour.db",
        help="Path to SQLite DB (default: data/panotour.db)",
    )
    parser.add_argument(
        "--csv",
        action="store_true",
        help="Print CSV instead of table",
    )
    return parser.parse_args(argv)


async def fetch_snapshot(repository, tour_id):
    tour = await repository.fetch_tour(tour_id)
    scenes = await repository.fetch_scenes(tour_id)
    hotspots = {}
    for scene in scenes:
        hotspots[scene["id"]] = await repository.fetch_hotspots(scene["id"])
    return tour, scenes, hotspots


def scene_rows(graph):
    first = graph.get_first_scene().id
    unreachable = set(graph.unreachable_from(first))
    rows = []
    for scene in graph.scenes:
        hotspots = graph.get_hotspots(scene.id)
        rows.append(
            {
                "order": str(scene.order_index),
                "title": scene.title,
                "hotspots": str(len(hotspots)),
                "links": str(len(graph.links_from(scene.id))),
                "reachable": "no" if scene.id in unreachable else "yes",
                "id": scene.id,
            }
        )
    return rows


def print_table(rows):
    headers = ["order", "title", "hotspots", "links", "reachable", "id"]
    widths = {h: len(h) for h in headers}
    for r in rows:
        for h in headers:
            widths[h] = max(widths[h], len(r[h]))
    print(" | ".join(h.ljust(widths[h]) for h in headers))
    print("-+-".join("-" * widths[h] for h in headers))
    for r in rows:
        print(" | ".join(r[h].ljust(widths[h]) for h in headers))
    print(f"\nTotal: {len(rows)}")


def print_csv(rows):
    writer = csv.writer(sys.stdout)
    headers = ["id", "order", "title", "hotspots", "links", "reachable"]
    writer.writerow(headers)
    for r in rows:
        writer.writerow([r[h] for h in headers])


def main(argv=None):
    args = parse_args(argv)
    db_path = Path(args.db).expanduser().resolve()
    if not db_path.exists():
        print(f"DB not found: {db_path}", file=sys.stderr)
        return 1
    repository = SqliteTourRepository(str(db_path))
    try:
        tour, scenes, hotspots = asyncio.run(fetch_snapshot(repository, args.tour_id))
        graph = TourGraph.load(tour, scenes, hotspots)
    except NotFoundError as e:
        print(e.message, file=sys.stderr)
        return 1
    except ValidationError as e:
        print(e.message, file=sys.stderr)
        for p in e.problems:
            print(f"  {p['id']}: {p['message']} (expected {p['expected']}, got {p['actual']!r})", file=sys.stderr)
        return 1
    rows = scene_rows(graph)
    if args.csv:
        print_csv(rows)
    else:
        print_table(rows)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
