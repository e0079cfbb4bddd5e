"""
Media catalog.

Scans the media directory for ``<title>-<tier>.<format>`` files and keeps,
for every title, every format at every tier up to the best source on disk.
Missing variants are produced by the Transcoder; nothing is upscaled.

Queries run under the read side of a readers/writer lock and a refresh
swaps the new catalog in under the write side, so a reader sees either the
previous catalog or the new one, never a partial refresh.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from tierstream.errors import CatalogError
from tierstream.events import CatalogUpdated, EventBus
from tierstream.media.tiers import ContainerFormat, ResolutionTier
from tierstream.media.transcoder import GenerationMethod, Transcoder
from tierstream.utils.locks import ReadWriteLock

logger = logging.getLogger(__name__)


FILENAME_PATTERN = re.compile(r"^(.+)-(\d+p)\.(avi|mp4|mkv)$")


@dataclass(frozen=True)
class VideoFile:
    """One variant of a title on disk."""

    title: str
    format: ContainerFormat
    tier: ResolutionTier
    filename: str

    @property
    def key(self) -> tuple[str, ResolutionTier, ContainerFormat]:
        return (self.title, self.tier, self.format)

    @property
    def min_bitrate_kbps(self) -> int:
        return self.tier.min_bitrate_kbps

    def __str__(self) -> str:
        return f"{self.title}-{self.tier.value}{self.format.value}"


def parse_video_filename(filename: str) -> Optional[VideoFile]:
    """
    Parse ``Movie-720p.mkv`` into a VideoFile.

    Returns None for names that do not follow the convention or use a tier
    outside the supported set.
    """
    match = FILENAME_PATTERN.match(filename)
    if not match:
        return None

    title, tier_token, ext = match.groups()
    tier = ResolutionTier.parse(tier_token)
    if tier is None:
        return None

    return VideoFile(
        title=title,
        format=ContainerFormat("." + ext),
        tier=tier,
        filename=filename,
    )


@dataclass
class RefreshStats:
    """Outcome of one catalog refresh."""

    titles: int = 0
    files: int = 0
    generated: int = 0
    placeholders: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def elapsed_time(self) -> Optional[timedelta]:
        if not self.started_at:
            return None
        end = self.finished_at or datetime.now()
        return end - self.started_at


class CatalogManager:
    """
    In-memory index of the media directory, kept complete by refresh().

    Usage:
        catalog = CatalogManager("videos", Transcoder(encoder_available=False))
        await catalog.refresh()
        videos = await catalog.suitable_videos(2.5, ContainerFormat.MKV)
    """

    def __init__(
        self,
        media_dir: str | Path,
        transcoder: Transcoder,
        events: Optional[EventBus] = None,
    ):
        self.media_dir = Path(media_dir)
        self.transcoder = transcoder
        self.events = events
        self._catalog: dict[str, frozenset[VideoFile]] = {}
        self._lock = ReadWriteLock()
        # Serializes whole refreshes; readers only wait for the final swap
        self._refresh_lock = asyncio.Lock()
        self.last_refresh: Optional[RefreshStats] = None

    async def refresh(self) -> RefreshStats:
        """
        Rescan the media directory and generate every missing variant.

        Returns:
            RefreshStats for this pass
        """
        async with self._refresh_lock:
            stats = RefreshStats(started_at=datetime.now())
            logger.info(f"Refreshing catalog in {self.media_dir}")

            if not self.media_dir.exists():
                self.media_dir.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created media directory {self.media_dir}")

            scanned = await asyncio.to_thread(self._scan_directory)
            for title, records in sorted(scanned.items()):
                await self._complete_title(title, records, stats)

            # Titles that appeared mid-refresh are left for the next pass
            rescanned = await asyncio.to_thread(self._scan_directory)
            new_catalog: dict[str, frozenset[VideoFile]] = {
                title: frozenset(rescanned[title])
                for title in sorted(scanned)
                if title in rescanned
            }

            async with self._lock.writer():
                self._catalog = new_catalog

            stats.titles = len(new_catalog)
            stats.files = sum(len(files) for files in new_catalog.values())
            stats.finished_at = datetime.now()
            self.last_refresh = stats

            logger.info(
                f"Catalog refresh complete: {stats.titles} titles, {stats.files} files, "
                f"{stats.generated} generated ({stats.placeholders} placeholders), "
                f"{len(stats.errors)} errors in {stats.elapsed_time}"
            )

        if self.events:
            self.events.publish(CatalogUpdated(titles=stats.titles, total_files=stats.files))

        return stats

    async def _complete_title(
        self,
        title: str,
        records: list[VideoFile],
        stats: RefreshStats,
    ) -> None:
        """Generate every (format, tier) of ``title`` up to its best source tier."""
        # Highest tier wins; ties go to the first filename in sort order
        source = max(sorted(records, key=lambda r: r.filename), key=lambda r: r.tier.height)
        max_tier = source.tier
        existing = {(r.format, r.tier) for r in records}

        for fmt in ContainerFormat:
            for tier in ResolutionTier.up_to(max_tier):
                if (fmt, tier) in existing:
                    continue
                try:
                    result = await self.transcoder.generate(
                        self.media_dir / source.filename, title, fmt, tier
                    )
                except (OSError, CatalogError) as e:
                    message = f"{title}-{tier.value}{fmt.value}: {e}"
                    logger.error(f"Variant generation failed for {message}")
                    stats.errors.append(message)
                    continue

                if result.method is GenerationMethod.EXISTING:
                    continue
                stats.generated += 1
                if result.method is GenerationMethod.PLACEHOLDER:
                    stats.placeholders += 1

    def _list_records(self) -> list[VideoFile]:
        records = []
        for path in sorted(self.media_dir.iterdir()):
            if not path.is_file():
                continue
            record = parse_video_filename(path.name)
            if record is None:
                logger.debug(f"Skipping unrecognized file {path.name}")
                continue
            records.append(record)
        return records

    def _scan_directory(self) -> dict[str, list[VideoFile]]:
        grouped: dict[str, list[VideoFile]] = {}
        for record in self._list_records():
            grouped.setdefault(record.title, []).append(record)
        return grouped

    async def suitable_videos(
        self,
        speed_mbps: float,
        fmt: ContainerFormat | str,
    ) -> list[VideoFile]:
        """
        Variants in ``fmt`` whose minimum bitrate fits ``speed_mbps``.

        Sorted by rendered name so the same catalog always answers the same way.
        """
        if isinstance(fmt, str):
            parsed = ContainerFormat.parse(fmt)
            if parsed is None:
                return []
            fmt = parsed

        threshold_kbps = speed_mbps * 1000
        async with self._lock.reader():
            matches = [
                video
                for files in self._catalog.values()
                for video in files
                if video.format == fmt and video.min_bitrate_kbps <= threshold_kbps
            ]
        return sorted(matches, key=str)

    async def snapshot(self) -> dict[str, frozenset[VideoFile]]:
        """Copy of the catalog mapping."""
        async with self._lock.reader():
            return dict(self._catalog)

    def titles(self) -> list[str]:
        return sorted(self._catalog)

    def files_for(self, title: str) -> list[VideoFile]:
        return sorted(self._catalog.get(title, ()), key=str)

    def total_files(self) -> int:
        return sum(len(files) for files in self._catalog.values())

    def get_file(self, filename: str) -> Optional[VideoFile]:
        record = parse_video_filename(filename)
        if record is None:
            return None
        return record if record in self._catalog.get(record.title, ()) else None

    def has_file(self, filename: str) -> bool:
        return self.get_file(filename) is not None

    def path_for(self, filename: str) -> Path:
        return self.media_dir / filename
