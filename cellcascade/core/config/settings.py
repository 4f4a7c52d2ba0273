"""Analysis configuration.

Settings are loaded from YAML defaults and overridden by environment variables
prefixed with `CCA_`.
"""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cellcascade.core.analytics.pipeline import PostprocessConfig
from cellcascade.core.regression.box_codec import DecodeConfig
from cellcascade.core.regression.targets import CascadeStage
from cellcascade.core.trackers.cell_tracker import TrackerConfig
from cellcascade.core.types import ConfigurationError


class AnalysisSettings(BaseSettings):
    """Runtime configuration loaded from YAML defaults and `CCA_` env overrides."""

    # Box decoding
    class_index: int = 1
    decode_min_size: float = 1.0
    # Image size used to clip decoded boxes; both or neither must be set.
    image_width: float | None = None
    image_height: float | None = None
    round_to_pixels: bool = False

    # Detection post-processing
    score_threshold: float = 0.0
    detection_min_size: float = 0.0
    detection_max_size: float | None = None
    nms_iou: float | None = 0.5
    max_detections: int | None = None

    # Tracking
    min_iou: float = 0.3
    max_invisible_count: int = 10
    size_weight: float = 0.2
    aspect_ratio_weight: float = 0.2
    iou_weight: float = 0.6
    # Center distance gate in pixels; 0 disables the gate.
    max_distance: float = 0.0
    preallocate_rows: int = 1000
    exact_assignment_limit: int = 1000

    # Cascade training targets: stage k is positive at IoU >= threshold k.
    stage_iou_thresholds: list[float] = Field(default_factory=lambda: [0.5, 0.6, 0.7, 0.7])
    stage_loss_weights: list[float] = Field(default_factory=lambda: [1.0, 1.0, 0.5, 0.5])
    num_classes: int = 1

    # Evaluation
    eval_iou_threshold: float = 0.5
    count_score_threshold: float = 0.2
    eval_workers: int = 1

    model_config = SettingsConfigDict(env_prefix="CCA_", validate_assignment=True)

    @field_validator("class_index", "num_classes")
    def _validate_positive_int(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("must be >= 1")
        return int(v)

    @field_validator("decode_min_size")
    def _validate_decode_min_size(cls, v: float) -> float:
        if not float(v) > 0.0:
            raise ValueError("decode_min_size must be > 0")
        return float(v)

    @field_validator("image_width", "image_height")
    def _validate_image_size(cls, v: float | None) -> float | None:
        if v is None:
            return v
        if not float(v) > 0.0:
            raise ValueError("image size must be > 0")
        return float(v)

    @field_validator(
        "score_threshold", "min_iou", "count_score_threshold", "size_weight",
        "aspect_ratio_weight", "iou_weight",
    )
    def _validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= float(v) <= 1.0:
            raise ValueError("must be in [0, 1]")
        return float(v)

    @field_validator("eval_iou_threshold")
    def _validate_eval_iou_threshold(cls, v: float) -> float:
        if not 0.0 < float(v) <= 1.0:
            raise ValueError("eval_iou_threshold must be in (0, 1]")
        return float(v)

    @field_validator("nms_iou")
    def _validate_nms_iou(cls, v: float | None) -> float | None:
        if v is None:
            return v
        if not 0.0 < float(v) <= 1.0:
            raise ValueError("nms_iou must be in (0, 1]")
        return float(v)

    @field_validator("detection_min_size", "max_distance")
    def _validate_non_negative(cls, v: float) -> float:
        if float(v) < 0.0:
            raise ValueError("must be >= 0")
        return float(v)

    @field_validator("max_invisible_count", "preallocate_rows", "eval_workers")
    def _validate_at_least_one(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("must be >= 1")
        return int(v)

    @field_validator("max_detections", "exact_assignment_limit")
    def _validate_optional_count(cls, v: int | None) -> int | None:
        if v is None:
            return v
        if int(v) < 0:
            raise ValueError("must be >= 0")
        return int(v)

    @field_validator("stage_iou_thresholds")
    def _validate_stage_thresholds(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("stage_iou_thresholds must not be empty")
        for t in v:
            if not 0.0 < float(t) <= 1.0:
                raise ValueError("stage_iou_thresholds values must be in (0, 1]")
        return [float(t) for t in v]

    @model_validator(mode="after")
    def _validate_stage_lengths(self) -> AnalysisSettings:
        if len(self.stage_loss_weights) != len(self.stage_iou_thresholds):
            raise ValueError("stage_loss_weights and stage_iou_thresholds must have equal length")
        return self


def settings_to_dict(settings: AnalysisSettings) -> dict[str, Any]:
    return settings.model_dump()


def _config_path() -> Path:
    """Return the YAML configuration path (defaults to config/cellcascade.config.yml)."""

    return Path(os.getenv("CCA_CONFIG", "config/cellcascade.config.yml"))


def load_settings(overrides: dict[str, Any] | None = None) -> AnalysisSettings:
    """Load settings from YAML and environment variables.

    YAML provides defaults; environment variables override; explicit
    `overrides` (e.g. a preset patch) win over both.
    """

    data: dict[str, Any] = {}
    path = _config_path()
    if path.exists():
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    env_settings = AnalysisSettings()
    env_overrides: dict[str, Any] = {
        name: getattr(env_settings, name) for name in env_settings.model_fields_set
    }

    merged = {**data, **env_overrides, **(overrides or {})}
    return AnalysisSettings(**merged)


def decode_config_from_settings(settings: AnalysisSettings) -> DecodeConfig:
    bounds = (settings.image_width, settings.image_height)
    if (bounds[0] is None) != (bounds[1] is None):
        raise ConfigurationError("image_width and image_height must be set together")
    return DecodeConfig(
        class_index=settings.class_index,
        min_size=settings.decode_min_size,
        clip_bounds=None if bounds[0] is None else bounds,
        round_to_pixels=settings.round_to_pixels,
    )


def postprocess_config_from_settings(settings: AnalysisSettings) -> PostprocessConfig:
    return PostprocessConfig(
        score_threshold=settings.score_threshold,
        min_size=settings.detection_min_size,
        max_size=settings.detection_max_size,
        nms_iou=settings.nms_iou,
        max_detections=settings.max_detections,
    )


def tracker_config_from_settings(settings: AnalysisSettings) -> TrackerConfig:
    return TrackerConfig(
        min_iou=settings.min_iou,
        max_invisible_count=settings.max_invisible_count,
        size_weight=settings.size_weight,
        aspect_ratio_weight=settings.aspect_ratio_weight,
        iou_weight=settings.iou_weight,
        max_distance=settings.max_distance if settings.max_distance > 0 else math.inf,
        preallocate_rows=settings.preallocate_rows,
        exact_assignment_limit=settings.exact_assignment_limit,
    )


def cascade_stages_from_settings(settings: AnalysisSettings) -> tuple[CascadeStage, ...]:
    """Stage k: positives at IoU in [t_k, 1], negatives in [0, t_k)."""

    return tuple(
        CascadeStage(positive_range=(t, 1.0), negative_range=(0.0, t), loss_weight=w)
        for t, w in zip(settings.stage_iou_thresholds, settings.stage_loss_weights)
    )
