"""Media collaborator: resolves a job's source to playable files."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from streamflow.models.job import SourceRef
from streamflow.utils.errors import PersistenceError, SourceUnresolvedError

logger = logging.getLogger(__name__)


class ResolvedMedia(BaseModel):
    """Ordered list of local files plus optional pre-computed metadata."""

    paths: list[Path] = Field(min_length=1)
    duration_seconds: Optional[float] = None
    resolution: Optional[str] = None

    @property
    def is_playlist(self) -> bool:
        return len(self.paths) > 1


class MediaResolver(ABC):
    """Read-only lookup from SourceRef to ResolvedMedia."""

    @abstractmethod
    async def resolve(self, source_ref: SourceRef) -> ResolvedMedia:
        """
        Resolve a source reference.

        Raises:
            SourceUnresolvedError: If the asset or any playlist entry is missing
        """


class StaticMediaLibrary(MediaResolver):
    """Resolver over a fixed mapping, for development and tests."""

    def __init__(self, assets: dict[str, list[str]], check_files: bool = False) -> None:
        self.assets = assets
        self.check_files = check_files

    async def resolve(self, source_ref: SourceRef) -> ResolvedMedia:
        entries = self.assets.get(source_ref.id)
        if not entries:
            raise SourceUnresolvedError(f"No media for {source_ref.kind} {source_ref.id}")
        paths = [Path(entry) for entry in entries]
        if self.check_files:
            missing = [str(path) for path in paths if not path.is_file()]
            if missing:
                raise SourceUnresolvedError(f"Media files missing: {', '.join(missing)}")
        return ResolvedMedia(paths=paths)


class SupabaseMediaLibrary(MediaResolver):
    """Resolve videos and playlists from the ``videos`` and ``playlist_videos`` tables."""

    def __init__(self, supabase_client: Any, media_root: str = ".") -> None:
        """
        Initialize the SupabaseMediaLibrary.

        Args:
            supabase_client: Supabase client instance
            media_root: Directory that relative ``file_path`` values live under
        """
        self.supabase = supabase_client
        self.media_root = Path(media_root)

    def _local_path(self, file_path: str) -> Path:
        path = Path(file_path)
        if not path.is_absolute():
            path = self.media_root / path
        return path

    def _fetch_video(self, video_id: str) -> Optional[dict[str, Any]]:
        result = self.supabase.table("videos").select("*").eq("id", video_id).execute()
        return result.data[0] if result.data else None

    async def resolve(self, source_ref: SourceRef) -> ResolvedMedia:
        try:
            if source_ref.kind == "playlist":
                entries = (
                    self.supabase.table("playlist_videos")
                    .select("*")
                    .eq("playlist_id", source_ref.id)
                    .order("position")
                    .execute()
                ).data or []
                videos = [self._fetch_video(str(entry["video_id"])) for entry in entries]
            else:
                videos = [self._fetch_video(source_ref.id)]
        except Exception as e:
            logger.error(f"Failed to look up {source_ref.kind} {source_ref.id}: {e}")
            raise PersistenceError(f"Media lookup failed for {source_ref.id}: {e}") from e

        videos = [video for video in videos if video]
        if not videos:
            raise SourceUnresolvedError(f"No media for {source_ref.kind} {source_ref.id}")

        paths = [self._local_path(video["file_path"]) for video in videos]
        missing = [str(path) for path in paths if not path.is_file()]
        if missing:
            raise SourceUnresolvedError(f"Media files missing: {', '.join(missing)}")

        durations = [video.get("duration") for video in videos]
        total = sum(durations) if all(d is not None for d in durations) else None
        return ResolvedMedia(
            paths=paths,
            duration_seconds=total,
            resolution=videos[0].get("resolution") if len(videos) == 1 else None,
        )
