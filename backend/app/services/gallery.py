from typing import List

from app.models import ClipListItem, CompilationListItem, MediaKind, RemoteFile
from app.services.clip_catalog import daily_date


THUMB_SUFFIX = ".thumb.jpg"


def list_daily_clips(files: List[RemoteFile]) -> List[ClipListItem]:
    """Daily clips sorted by name (= date), each linked to its thumbnail when present."""
    thumbnails = {
        f.name[: -len(THUMB_SUFFIX)]: f.id
        for f in files
        if f.name.endswith(THUMB_SUFFIX)
    }

    clips = []
    for f in sorted(files, key=lambda f: f.name):
        date = daily_date(f.name)
        if date is None:
            continue
        clips.append(
            ClipListItem(
                id=f.id,
                name=f.name,
                date=date,
                type=MediaKind.from_filename(f.name),
                created_at=f.created_at,
                size=f.size,
                thumbnail_id=thumbnails.get(date),
            )
        )
    return clips


def list_compilations(files: List[RemoteFile], prefix: str) -> List[CompilationListItem]:
    """Compilation videos, newest first."""
    found = [
        f for f in files
        if f.name.startswith(prefix)
        and f.name.lower().endswith(".mp4")
        and daily_date(f.name) is None
    ]
    found.sort(key=lambda f: (f.created_at is not None, f.created_at), reverse=True)
    return [
        CompilationListItem(id=f.id, name=f.name, created_at=f.created_at, size=f.size)
        for f in found
    ]
