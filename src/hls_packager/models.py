"""Pydantic models for configuration and data validation."""

import os
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class PathsConfig(BaseModel):
    """Filesystem roots."""

    output_root: str = Field(
        default="transcoded", description="Root directory for generated HLS packages"
    )
    watch_root: str = Field(
        default="videos", description="Directory watched for newly-arrived source files"
    )


class SchedulerConfig(BaseModel):
    """Job admission parameters."""

    max_concurrent_jobs: Optional[int] = Field(
        default=None, gt=0, description="Packages encoded in parallel (None = half the CPUs)"
    )
    on_rendition_failure: Literal["continue", "abort"] = Field(
        default="continue",
        description="Keep encoding remaining renditions after one fails, or abort the package",
    )

    @property
    def effective_max_jobs(self) -> int:
        if self.max_concurrent_jobs:
            return self.max_concurrent_jobs
        return max(1, (os.cpu_count() or 2) // 2)


class EncodingConfig(BaseModel):
    """Rendition encoding parameters shared by both strategies."""

    segment_duration_s: int = Field(default=10, gt=0, description="HLS segment length in seconds")
    hwaccel_enabled: bool = Field(
        default=False, description="Try the hardware-accelerated encoder before libx264"
    )
    hwaccel_codec: str = Field(
        default="h264_nvenc", description="Hardware codec (h264_nvenc, h264_qsv, h264_videotoolbox)"
    )
    software_codec: str = Field(default="libx264", description="CPU codec used as fallback")
    quality_profile: str = Field(
        default="medium", description="Quality profile: low, medium or high (unknown = medium)"
    )
    audio_codec: str = Field(default="aac", description="Audio codec for every rendition")
    audio_bitrate: str = Field(default="128k", description="Audio bitrate")
    audio_sample_rate: int = Field(default=48000, gt=0, description="Audio sample rate in Hz")


class RunnerConfig(BaseModel):
    """FFmpeg runner settings."""

    global_timeout_s: int = Field(
        default=7200, gt=0, description="Maximum duration of one rendition encode in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=300, gt=0, description="Kill the encoder if no progress is reported for N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save FFmpeg logs and commands on failure for debugging"
    )
    ffmpeg_loglevel: str = Field(
        default="error", description="FFmpeg log level: error, warning, info, verbose"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = system temp)"
    )


class ThumbnailConfig(BaseModel):
    """Thumbnail side-process settings."""

    enabled: bool = Field(default=True, description="Generate thumbnail.jpg for each package")
    size: str = Field(default="640x360", description="Thumbnail frame size (WxH)")
    seek_s: float = Field(default=1.0, ge=0.0, description="Offset into the first segment")


class ServerConfig(BaseModel):
    """HTTP listing server settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, gt=0, lt=65536)


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class PackagerConfig(BaseModel):
    """Complete application configuration with validation."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    encoding: EncodingConfig = Field(default_factory=EncodingConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    thumbnails: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PackagerConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PackagerConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("output") is not None:
            config_dict["paths"]["output_root"] = cli_args["output"]
        if cli_args.get("watch") is not None:
            config_dict["paths"]["watch_root"] = cli_args["watch"]
        if cli_args.get("workers") is not None:
            config_dict["scheduler"]["max_concurrent_jobs"] = cli_args["workers"]
        if cli_args.get("on_failure") is not None:
            config_dict["scheduler"]["on_rendition_failure"] = cli_args["on_failure"]
        if cli_args.get("segment_duration") is not None:
            config_dict["encoding"]["segment_duration_s"] = cli_args["segment_duration"]
        if cli_args.get("hwaccel") is not None:
            config_dict["encoding"]["hwaccel_enabled"] = cli_args["hwaccel"]
        if cli_args.get("profile") is not None:
            config_dict["encoding"]["quality_profile"] = cli_args["profile"]
        if cli_args.get("port") is not None:
            config_dict["server"]["port"] = cli_args["port"]

        return PackagerConfig.from_dict(config_dict)


class RenditionSpec(BaseModel):
    """One planned rendition. Derived from the ladder on every run, never persisted."""

    name: str = Field(..., description="Rendition name, e.g. '720p'")
    height: int = Field(..., gt=0, description="Target height in pixels")
    width: int = Field(..., gt=0, description="Target width preserving source aspect ratio")
    bitrate_kbps: int = Field(..., gt=0, description="Target video bitrate in kbit/s")
    preset: str = Field(..., description="Encoder speed/quality preset")
    crf: int = Field(..., ge=0, le=51, description="CRF-equivalent quality value")

    model_config = {"frozen": True}

    @property
    def bandwidth(self) -> int:
        """Bandwidth advertised in the master manifest (bits per second)."""
        return self.bitrate_kbps * 1000

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


class PackageStatus(str, Enum):
    """Terminal package states."""

    COMPLETED = "completed"  # Every planned rendition is present
    PARTIAL = "partial"      # Some renditions failed; manifest lists the rest
    FAILED = "failed"        # Nothing usable, aborted, or the pipeline crashed


class PackageOutcome(BaseModel):
    """Result delivered to the submitter of a package job, exactly once."""

    source_path: str = Field(..., description="Absolute source file path")
    package_dir: str = Field(..., description="Package output directory")
    status: PackageStatus = Field(..., description="Terminal state")
    renditions: List[str] = Field(default_factory=list, description="Renditions in the manifest")
    encoded: List[str] = Field(default_factory=list, description="Renditions encoded this run")
    reused: List[str] = Field(default_factory=list, description="Renditions found complete on disk")
    failed: Dict[str, str] = Field(default_factory=dict, description="Failed rendition -> reason")
    already_complete: bool = Field(default=False, description="Package was complete before the run")
    error: Optional[str] = Field(default=None, description="Pipeline-level error")
    duration_s: float = Field(default=0.0, ge=0.0, description="Wall time in seconds")

    @property
    def ok(self) -> bool:
        return self.status == PackageStatus.COMPLETED
