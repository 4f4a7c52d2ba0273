"""CLI: benchmark the cell tracker on synthetic drifting populations.

This tool is print-oriented (human-readable) and also writes a JSON report
suitable for regression tracking.
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import Any

import numpy as np

from cellcascade.core.config.presets import PRESET_LABELS, preset_patch
from cellcascade.core.config.settings import AnalysisSettings, tracker_config_from_settings
from cellcascade.core.trackers.cell_tracker import CellTracker

_STAT_KEYS = ("min", "p50", "p95", "p99", "max", "mean")


def _percentiles(values: list[float]) -> dict[str, float]:
    """Spread of a per-frame series (timings or track counts)."""

    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return dict.fromkeys(_STAT_KEYS, 0.0)
    p50, p95, p99 = np.percentile(arr, [50, 95, 99])
    stats = (arr.min(), p50, p95, p99, arr.max(), arr.mean())
    return {key: float(value) for key, value in zip(_STAT_KEYS, stats)}


def synthetic_frames(
    num_cells: int,
    num_frames: int,
    *,
    seed: int = 0,
    field_size: float = 1024.0,
    drift: float = 1.5,
    dropout: float = 0.05,
) -> list[tuple[np.ndarray, np.ndarray]]:
    """Random-walk cells with occasional missed detections, as (boxes, scores) per frame."""

    rng = np.random.default_rng(seed)
    sizes = rng.uniform(8.0, 20.0, size=(num_cells, 2))
    positions = rng.uniform(0.0, field_size - 20.0, size=(num_cells, 2))
    frames: list[tuple[np.ndarray, np.ndarray]] = []
    for _ in range(num_frames):
        positions = np.clip(
            positions + rng.normal(0.0, drift, size=positions.shape), 0.0, field_size - 20.0
        )
        visible = rng.random(num_cells) >= dropout
        boxes = np.concatenate([positions, sizes], axis=1)[visible]
        scores = rng.uniform(0.5, 1.0, size=int(visible.sum()))
        frames.append((boxes, scores))
    return frames


def run_once(num_cells: int, settings: dict[str, Any]) -> dict[str, Any]:
    """Run a single benchmark pass over one synthetic population."""

    num_frames = int(settings.get("frames", 50) or 50)
    warmup_frames = int(settings.get("warmup_frames", 5) or 0)
    seed = int(settings.get("seed", 0) or 0)

    tracker_fields = set(AnalysisSettings.model_fields)
    config = tracker_config_from_settings(
        AnalysisSettings(**{k: v for k, v in settings.items() if k in tracker_fields})
    )
    tracker = CellTracker(config)
    frames = synthetic_frames(num_cells, warmup_frames + num_frames, seed=seed)

    update_ms: list[float] = []
    live_tracks: list[float] = []
    for i, (boxes, scores) in enumerate(frames, start=1):
        t0 = time.perf_counter()
        tracks = tracker.update(boxes, scores, frame_index=i)
        t1 = time.perf_counter()
        if i <= warmup_frames:
            continue
        update_ms.append((t1 - t0) * 1000.0)
        live_tracks.append(float(len(tracks)))

    seconds = sum(update_ms) / 1000.0
    return {
        "num_cells": num_cells,
        "frames_measured": len(update_ms),
        "warmup_frames": warmup_frames,
        "fps": (len(update_ms) / seconds) if seconds > 0 else 0.0,
        "update_ms": _percentiles(update_ms),
        "live_tracks": _percentiles(live_tracks),
        "table_rows": len(tracker.table),
        "track_ids_issued": tracker.state.next_id - 1,
    }


def main() -> None:
    """CLI entrypoint for benchmarking the tracker."""

    parser = argparse.ArgumentParser(description="Benchmark the cell tracker on synthetic data")
    parser.add_argument(
        "--cells",
        default="50,200,1000",
        help="Comma-separated population sizes (default: 50,200,1000)",
    )
    parser.add_argument("--frames", type=int, default=50)
    parser.add_argument("--warmup-frames", type=int, default=5)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument(
        "--preset",
        action="append",
        default=[],
        help="Run using a preset id: dense | sparse | timelapse (can be repeated)",
    )
    parser.add_argument(
        "--out",
        default="benchmark_tracker_results.json",
        help="Where to write JSON results",
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    try:
        populations = [int(c) for c in str(args.cells).split(",") if c.strip()]
    except ValueError as exc:
        raise SystemExit(f"--cells must be comma-separated integers, got {args.cells!r}") from exc
    if not populations or min(populations) <= 0:
        raise SystemExit("--cells needs at least one positive population size")

    base_settings: dict[str, Any] = {
        "frames": args.frames,
        "warmup_frames": args.warmup_frames,
        "seed": args.seed,
    }

    run_settings_list: list[tuple[str, dict[str, Any]]] = []
    if args.preset:
        for preset_id in args.preset:
            try:
                patch = preset_patch(preset_id)
            except KeyError as exc:
                raise SystemExit(f"Unknown preset: {preset_id}") from exc
            run_settings_list.append((preset_id, {**base_settings, **patch}))
    else:
        run_settings_list.append(("custom", base_settings))

    all_results: list[dict[str, Any]] = []

    for preset_id, s in run_settings_list:
        label = PRESET_LABELS.get(preset_id, preset_id)
        print("\n" + "=" * 70)
        print(f"Preset: {label} ({preset_id})")
        for k in sorted(s.keys()):
            print(f"  - {k}: {s[k]}")

        for n in populations:
            res = run_once(n, s)
            print("-" * 70)
            print(f"Cells: {n}")
            print(f"Updates/s: {res['fps']:.2f}")
            stats = res["update_ms"]
            print(
                f"Update ms: p50={stats['p50']:.2f} p95={stats['p95']:.2f} "
                f"max={stats['max']:.2f}"
            )
            print(f"Track IDs issued: {res['track_ids_issued']}")
            all_results.append({"preset": preset_id, "settings": s, **res})

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(all_results, indent=2), encoding="utf-8")
    print("\nWrote results to", out_path)


if __name__ == "__main__":
    main()
