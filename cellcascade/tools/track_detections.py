"""CLI: link per-frame cell detections into tracks.

Input is a JSON list of frames, each `{"frame": int, "boxes": [[x, y, w, h], ...],
"scores": [...]}` (`frame` and `scores` are optional). Writes the tracking
table and per-track trajectory summaries.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import numpy as np

from cellcascade.core.analytics.trajectories import summarize_tracks
from cellcascade.core.config.presets import PRESETS, apply_preset
from cellcascade.core.config.settings import load_settings, tracker_config_from_settings
from cellcascade.core.trackers.cell_tracker import CellTracker
from cellcascade.core.types import CellCascadeError

logger = logging.getLogger(__name__)


def _load_frames(path: str) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"Input not found: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Cannot parse {p}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("frames", [])
    if not isinstance(data, list) or not all(isinstance(f, dict) for f in data):
        raise SystemExit(f"Expected a list of frame objects in {p}")
    return data


def run(args: argparse.Namespace) -> tuple[dict[str, Any], CellTracker]:
    settings = apply_preset(args.preset) if args.preset else load_settings()
    overrides = {
        "min_iou": args.min_iou,
        "max_invisible_count": args.max_invisible_count,
        "max_distance": args.max_distance,
    }
    try:
        for name, value in overrides.items():
            if value is not None:
                setattr(settings, name, value)
    except ValueError as exc:
        raise SystemExit(f"Invalid tracker option: {exc}") from exc

    try:
        tracker = CellTracker(tracker_config_from_settings(settings))
    except CellCascadeError as exc:
        raise SystemExit(f"Invalid tracker configuration: {exc}") from exc

    frames = _load_frames(args.input)
    for i, frame in enumerate(frames):
        frame_index = frame.get("frame", i + 1)
        try:
            frame_index = int(frame_index)
            boxes = np.asarray(frame.get("boxes", []), dtype=np.float64)
            scores = frame.get("scores")
            if scores is not None:
                scores = np.asarray(scores, dtype=np.float64)
            tracker.update(boxes, scores, frame_index)
        except (CellCascadeError, ValueError, TypeError) as exc:
            raise SystemExit(f"Frame {frame_index}: {exc}") from exc

    summaries = summarize_tracks(tracker.table)
    logger.info(
        "Tracked %d frames: %d rows, %d tracks", len(frames), len(tracker.table), len(summaries)
    )
    result = {
        "num_frames": len(frames),
        "num_tracks": len(summaries),
        "table": tracker.table.to_dict(),
        "tracks": [s.to_dict() for s in summaries],
    }
    return result, tracker


def main() -> None:
    """CLI entrypoint for offline tracking."""

    parser = argparse.ArgumentParser(description="Track cell detections across frames")
    parser.add_argument("--input", required=True, help="JSON file with per-frame detections")
    parser.add_argument("--output", required=True, help="Where to save JSON output")
    parser.add_argument(
        "--table-output", default=None, help="Optionally save the raw tracking table here"
    )
    parser.add_argument("--preset", default=None, help="dense | sparse | timelapse")
    parser.add_argument("--min-iou", type=float, default=None)
    parser.add_argument("--max-invisible-count", type=int, default=None)
    parser.add_argument(
        "--max-distance", type=float, default=None, help="Center gate in pixels; 0 disables"
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))
    if args.preset and args.preset not in PRESETS:
        raise SystemExit(f"Unknown preset: {args.preset}")

    result, tracker = run(args)
    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(result, indent=2), encoding="utf-8")
    if args.table_output:
        tracker.table.save_json(args.table_output)
    print(f"Wrote {result['num_tracks']} tracks over {result['num_frames']} frames to {out_path}")


if __name__ == "__main__":
    main()
