"""HTTP listing layer: a read-only view over the package directory tree."""

import logging
import os
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from . import layout
from .completion import FilesystemCompletionProbe
from .config import resolve_config
from .manifest import load as load_manifest
from .models import PackagerConfig

logger = logging.getLogger(__name__)


class VideoSummary(BaseModel):
    id: str
    name: str
    thumbnail: Optional[str]
    url: str


class VideoDetail(VideoSummary):
    category: str
    renditions: List[str]
    complete: bool


def find_packages(output_root: Path) -> List[Path]:
    """Package directories (those holding a master manifest), sorted by relative path."""
    if not output_root.is_dir():
        return []
    packages = []
    for dirpath, dirnames, filenames in os.walk(output_root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        if layout.MANIFEST_NAME in filenames:
            packages.append(Path(dirpath))
            dirnames[:] = []  # rendition dirs live below; nothing else to find
    packages.sort(key=lambda p: p.relative_to(output_root).as_posix())
    return packages


def create_app(config: Optional[PackagerConfig] = None) -> FastAPI:
    config = config or resolve_config()
    output_root = Path(config.paths.output_root)
    output_root.mkdir(parents=True, exist_ok=True)
    completion = FilesystemCompletionProbe()
    logger.info("Serving packages from %s", output_root)

    app = FastAPI(title="hls-packager")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def summary(package_dir: Path, root: Path = output_root) -> VideoSummary:
        video_id = package_dir.relative_to(root).as_posix()
        has_thumb = (package_dir / layout.THUMBNAIL_NAME).exists()
        return VideoSummary(
            id=video_id,
            name=package_dir.name,
            thumbnail=f"/videos/{video_id}/{layout.THUMBNAIL_NAME}" if has_thumb else None,
            url=f"/videos/{video_id}/{layout.MANIFEST_NAME}",
        )

    @app.get("/api/videos", response_model=List[VideoSummary])
    async def list_videos():
        return [summary(p) for p in find_packages(output_root)]

    @app.get("/api/videos/{video_id:path}", response_model=VideoDetail)
    async def get_video(video_id: str):
        root = output_root.resolve()
        package_dir = (root / video_id).resolve()
        if root not in package_dir.parents or not (package_dir / layout.MANIFEST_NAME).is_file():
            raise HTTPException(status_code=404, detail="Video not found")

        loaded = load_manifest(package_dir)
        base = summary(package_dir, root)
        category = package_dir.parent.relative_to(root).as_posix()
        return VideoDetail(
            **base.model_dump(),
            category="" if category == "." else category,
            renditions=loaded.renditions if loaded else [],
            complete=completion.package_complete(package_dir),
        )

    @app.get("/config/defaults")
    async def get_config_defaults():
        return config.model_dump()

    app.mount("/videos", StaticFiles(directory=str(output_root)), name="videos")
    return app
