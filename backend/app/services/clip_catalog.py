"""
Clip catalog: which daily items go into a compilation, in which order.

Daily files are named ``YYYY-MM-DD.ext``. The store may hold more than one
file for a day (a re-recorded clip with a different extension, or the same
name uploaded twice); only the most recently modified one is kept.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from app.errors import EmptyRangeError, InsufficientClipsError
from app.models import MediaItem, MediaKind, RemoteFile
from app.services.storage import StorageService


DAILY_FILE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.(mp4|webm|jpg|jpeg|png)$", re.IGNORECASE)
THUMBNAIL_MARKER = ".thumb."

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def daily_date(name: str) -> Optional[str]:
    """Return the YYYY-MM-DD date of a daily media file name, or None."""
    if THUMBNAIL_MARKER in name:
        return None
    m = DAILY_FILE_RE.match(name)
    return m.group(1) if m else None


def thumbnail_name(date: str) -> str:
    return f"{date}.thumb.jpg"


def _timestamp(f: RemoteFile) -> datetime:
    ts = f.modified_at or f.created_at or _EPOCH
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def dedupe_by_date(files: Iterable[RemoteFile]) -> Dict[str, RemoteFile]:
    """
    Keep one file per date: the latest modification time wins.

    Equal timestamps resolve to the file seen later in list order. That
    tie-break is arbitrary; callers must not read meaning into it.
    """
    by_date: Dict[str, RemoteFile] = {}
    for f in files:
        date = daily_date(f.name)
        if date is None:
            continue
        existing = by_date.get(date)
        if existing is None:
            by_date[date] = f
            continue
        if _timestamp(f) >= _timestamp(existing):
            print(f"♻️ Duplicate clip for {date}: keeping {f.name}, ignoring {existing.name}", flush=True)
            by_date[date] = f
        else:
            print(f"♻️ Duplicate clip for {date}: keeping {existing.name}, ignoring {f.name}", flush=True)
    return by_date


def build_catalog(
    files: Iterable[RemoteFile],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    min_clips: int = 1,
) -> List[MediaItem]:
    """
    Turn a raw folder listing into the ordered list of daily media.

    Args:
        files: Folder listing from the segment store
        start_date: Inclusive lower bound (YYYY-MM-DD) or None
        end_date: Inclusive upper bound (YYYY-MM-DD) or None
        min_clips: Minimum number of items required

    Returns:
        MediaItems sorted ascending by date, one per date

    Raises:
        EmptyRangeError: nothing left after filtering
        InsufficientClipsError: fewer than min_clips left
    """
    by_date = dedupe_by_date(files)

    # Zero-padded ISO dates compare correctly as strings.
    dates = [
        d for d in by_date
        if (start_date is None or d >= start_date) and (end_date is None or d <= end_date)
    ]
    dates.sort()

    if not dates:
        raise EmptyRangeError()
    if len(dates) < min_clips:
        raise InsufficientClipsError(found=len(dates), required=min_clips)

    items = []
    for d in dates:
        f = by_date[d]
        items.append(
            MediaItem(
                date=d,
                kind=MediaKind.from_filename(f.name),
                remote_id=f.id,
                name=f.name,
                modified_at=f.modified_at or f.created_at,
            )
        )
    return items


class ClipCatalogBuilder:
    """Builds the catalog for one folder from the segment store."""

    def __init__(self, storage: StorageService, min_clips: int):
        self.storage = storage
        self.min_clips = min_clips

    async def build(
        self,
        folder_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[MediaItem]:
        files = await asyncio.to_thread(self.storage.list_files, folder_id)
        items = build_catalog(files, start_date, end_date, min_clips=self.min_clips)
        print(f"📋 Catalog: {len(items)} clips ({items[0].date} → {items[-1].date})", flush=True)
        return items
