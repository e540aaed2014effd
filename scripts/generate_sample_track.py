from __future__ import annotations

import argparse
import json
import math
import random
from dataclasses import dataclass
from pathlib import Path

from track_review.csv_io import write_track
from track_review.geo import haversine_m
from track_review.models import GpsFix, MarkerType, Tag, Track


@dataclass(frozen=True, slots=True)
class Leg:
    heading_deg: float
    seconds: int


def generate_fixes(*, seed: int, start_lat: float, start_lon: float, legs: list[Leg], speed_mps: float) -> list[GpsFix]:
    """Generate a fake 1 Hz recording along a road made of straight legs."""

    rng = random.Random(seed)
    lat, lon = start_lat, start_lon
    total = 0.0
    second = 0
    out = [GpsFix(0.0, lat, lon, 0.0)]
    for leg in legs:
        for _ in range(leg.seconds):
            step = max(0.0, speed_mps + rng.uniform(-1.0, 1.0))
            heading = math.radians(leg.heading_deg + rng.uniform(-2.0, 2.0))
            new_lat = lat + (step * math.cos(heading)) / 111_320.0
            new_lon = lon + (step * math.sin(heading)) / (111_320.0 * math.cos(math.radians(lat)))
            total += haversine_m(lat, lon, new_lat, new_lon)
            lat, lon = new_lat, new_lon
            second += 1
            # GPS dropouts leave gaps in the recording
            if rng.random() < 0.02:
                continue
            out.append(GpsFix(float(second), round(lat, 7), round(lon, 7), round(total, 2)))
    return out


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake track CSV and catalogs for demo/testing.")
    p.add_argument("--out", type=str, default="sample_data/track.csv", help="Output track CSV path")
    p.add_argument("--catalogs", type=str, default="sample_data", help="Directory for tags.json / markers.json")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument("--speed", type=float, default=8.0, help="Average speed in m/s")
    args = p.parse_args()

    legs = [Leg(45.0, 300), Leg(90.0, 240), Leg(10.0, 420), Leg(300.0, 180)]
    fixes = generate_fixes(seed=args.seed, start_lat=45.4642, start_lon=9.1900, legs=legs, speed_mps=args.speed)

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    write_track(Track.from_fixes(fixes), out_path)

    cat_dir = Path(args.catalogs)
    cat_dir.mkdir(parents=True, exist_ok=True)
    tags = [Tag(1, "urgent", "d62728"), Tag(2, "pavement", "8c564b"), Tag(3, "signage", "2ca02c")]
    markers = [MarkerType(1, "Pothole", "pothole.png"), MarkerType(2, "Sign", "sign.png"), MarkerType(3, "Other", "")]
    (cat_dir / "tags.json").write_text(json.dumps([t.to_record() for t in tags], indent=2), encoding="utf-8")
    (cat_dir / "markers.json").write_text(json.dumps([m.to_record() for m in markers], indent=2), encoding="utf-8")

    print(f"Generated: {out_path} (fixes={len(fixes)}, seed={args.seed}) and catalogs in {cat_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
