"""Configuration models for the task manager and the HTTP producer."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped,unused-ignore]
from pydantic import BaseModel, Field, model_validator

DEFAULT_PHASE_MARKERS = ("开始分析查询", "Starting analysis")
DEFAULT_UPDATE_MARKERS = ("生成内容", "Generating content")
DEFAULT_UPDATE_DONE_MARKERS = ("生成内容完成", "Content generation complete")


class MergeSettings(BaseModel):
    """Duplicate-suppression knobs for the content accumulator."""

    # 0 applies the containment rules to every payload.
    min_duplicate_length: int = Field(default=0, ge=0)
    min_replace_length: int = Field(default=0, ge=0)
    phase_markers: tuple[str, ...] = Field(default=DEFAULT_PHASE_MARKERS)
    # Progress announcements that overwrite their previous entry instead of appending.
    update_markers: tuple[str, ...] = Field(default=DEFAULT_UPDATE_MARKERS)
    update_done_markers: tuple[str, ...] = Field(default=DEFAULT_UPDATE_DONE_MARKERS)

    @model_validator(mode="after")
    def validate_markers(self) -> MergeSettings:
        for name in ("phase_markers", "update_markers", "update_done_markers"):
            if any(not marker.strip() for marker in getattr(self, name)):
                raise ValueError(f"{name} must not contain blank entries")
        return self


class TaskManagerConfig(BaseModel):
    start_timeout_s: float = Field(default=30.0, gt=0)
    gc_interval_s: float = Field(default=300.0, gt=0)
    task_ttl_s: float = Field(default=1800.0, ge=0)
    cleanup_delay_s: float = Field(default=5.0, ge=0)
    preemptive_cancel: bool = Field(
        default=True,
        description="Also cancel the runner's asyncio task so an outstanding read is interrupted.",
    )
    gc_enabled: bool = True
    merge: MergeSettings = Field(default_factory=MergeSettings)

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> TaskManagerConfig:
        return cls.model_validate(data or {})

    @classmethod
    def from_file(cls, path: str | Path) -> TaskManagerConfig:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValueError(f"Cannot read config file {path}: {exc.strerror or exc}") from exc
        try:
            payload = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}") from exc
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError(f"Expected a mapping in {path}")
        section = payload.get("taskstream", payload)
        return cls.from_mapping(section)


class HttpProducerConfig(BaseModel):
    url: str = Field(..., description="Endpoint that streams ``data:`` records for a request")
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_s: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_url(self) -> HttpProducerConfig:
        if not self.url.startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return self


__all__ = [
    "DEFAULT_PHASE_MARKERS",
    "DEFAULT_UPDATE_DONE_MARKERS",
    "DEFAULT_UPDATE_MARKERS",
    "HttpProducerConfig",
    "MergeSettings",
    "TaskManagerConfig",
]
