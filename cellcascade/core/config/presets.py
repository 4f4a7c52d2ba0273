from __future__ import annotations

from typing import Any

from cellcascade.core.config.settings import AnalysisSettings, load_settings

# Acquisition-oriented presets. Each is a partial settings patch.
#
# Notes:
# - nms_iou / max_detections bound how many overlapping cells survive per frame
# - max_invisible_count is in frames; long gaps need larger values
# - max_distance gates association by center distance (0 disables the gate)


PRESETS: dict[str, dict[str, Any]] = {
    # Confluent cultures: touching cells, allow heavy overlap between boxes.
    "dense": {
        "score_threshold": 0.3,
        "nms_iou": 0.7,
        "max_detections": None,
        "min_iou": 0.4,
        "max_invisible_count": 3,
        "max_distance": 15.0,
    },
    # Sparse fields: suppress duplicates aggressively, keep coasting tracks longer.
    "sparse": {
        "score_threshold": 0.5,
        "nms_iou": 0.3,
        "min_iou": 0.3,
        "max_invisible_count": 10,
        "max_distance": 0.0,
    },
    # Long time-lapse with cell motion between frames: lean on size/shape cues.
    "timelapse": {
        "score_threshold": 0.4,
        "nms_iou": 0.5,
        "min_iou": 0.5,
        "iou_weight": 0.4,
        "size_weight": 0.3,
        "aspect_ratio_weight": 0.3,
        "max_invisible_count": 20,
        "max_distance": 40.0,
    },
}


PRESET_LABELS: dict[str, str] = {
    "dense": "Dense culture",
    "sparse": "Sparse field",
    "timelapse": "Time-lapse",
}


def list_presets() -> list[dict[str, Any]]:
    """Preset catalogue: id, display label and a copy of each patch."""

    return [
        {
            "id": preset_id,
            "label": PRESET_LABELS.get(preset_id, preset_id),
            "settings": dict(patch),
        }
        for preset_id, patch in PRESETS.items()
    ]


def preset_patch(preset_id: str) -> dict[str, Any]:
    """Copy of one preset's settings patch; unknown ids raise KeyError."""

    return dict(PRESETS[preset_id])


def apply_preset(preset_id: str, settings: AnalysisSettings | None = None) -> AnalysisSettings:
    """Return settings with the preset patch applied on top.

    Without explicit `settings`, the patch is layered over YAML and env values.
    """

    patch = preset_patch(preset_id)
    if settings is None:
        return load_settings(patch)
    return AnalysisSettings(**{**settings.model_dump(), **patch})
