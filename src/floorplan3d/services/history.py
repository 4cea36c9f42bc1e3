"""Past generation jobs, fetched live from the mesh vendor.

Nothing is stored locally: the vendor keeps the job records and we only
read enough of each one to reopen the result as a finished pipeline item.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from floorplan3d.services.adapter import ServiceAdapter
from floorplan3d.services.extractors import MESH_EXTRACTORS, extract_first


def _parse_timestamp(value: Any) -> datetime | None:
    """Meshy reports epoch milliseconds; ISO strings are accepted too."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class HistoryEntry:
    """Summary of one past job."""

    task_id: str
    status: str
    mesh_url: str | None = None
    thumbnail_url: str | None = None
    source_image_url: str | None = None
    created_at: datetime | None = None
    prompt: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def reopenable(self) -> bool:
        """True when the job finished and its mesh can be shown again."""
        return self.status == "SUCCEEDED" and bool(self.mesh_url)

    @property
    def preview_ref(self) -> str:
        """Best image to stand in for the original upload."""
        return self.source_image_url or self.thumbnail_url or ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "HistoryEntry":
        return cls(
            task_id=str(payload.get("id", "")),
            status=str(payload.get("status", "")).upper(),
            mesh_url=extract_first(payload, MESH_EXTRACTORS),
            thumbnail_url=payload.get("thumbnail_url") or None,
            source_image_url=payload.get("image_url") or None,
            created_at=_parse_timestamp(payload.get("created_at")),
            prompt=payload.get("texture_prompt") or "",
            raw=payload,
        )


_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class HistoryClient:
    """Lists and looks up past jobs through the service adapter."""

    def __init__(self, adapter: ServiceAdapter, page_size: int = 10, max_entries: int = 10):
        self._adapter = adapter
        self._page_size = page_size
        self._max_entries = max_entries

    @classmethod
    def from_config(cls, adapter: ServiceAdapter, config) -> "HistoryClient":
        return cls(
            adapter,
            page_size=int(config.get("history", "page_size", 10)),
            max_entries=int(config.get("history", "max_entries", 10)),
        )

    async def list_recent(self, page_size: int | None = None, page: int = 1) -> list[HistoryEntry]:
        """Past jobs, newest first, at most ``max_entries`` of them."""
        size = page_size or self._page_size
        records = await self._adapter.list_jobs(page=page, page_size=size)
        entries = [HistoryEntry.from_payload(r) for r in records if isinstance(r, dict)]
        entries.sort(key=lambda e: e.created_at or _EPOCH, reverse=True)

        limit = min(size, self._max_entries) if self._max_entries else size
        logger.info(f"History: {len(entries)} jobs fetched, showing {min(limit, len(entries))}")
        return entries[:limit]

    async def get(self, task_id: str) -> HistoryEntry:
        """Detail of a single job."""
        return HistoryEntry.from_payload(await self._adapter.get_job(task_id))
