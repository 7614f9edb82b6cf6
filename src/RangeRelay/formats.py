"""Media source descriptors consumed by the download engine.

An external metadata tool resolves a page URL into candidate streams, each
with a direct URL, the request headers the origin expects, an approximate
size, and optionally a preferred HTTP chunk size.  :class:`MediaSource` is the
validated form of one such candidate; the selection helpers pick the streams
a remux job needs.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

NO_CODEC = "none"


class MediaSource(BaseModel):
    """One downloadable stream: URL, headers, and size hints."""

    url: str
    headers: Dict[str, str] = Field(default_factory=dict, alias="http_headers")
    filesize_approx: int = Field(default=0, ge=0)
    chunk_size_hint: int = Field(default=0, description="Preferred part size; <= 0 means default")
    format_id: Optional[str] = None
    ext: Optional[str] = None
    vcodec: str = NO_CODEC
    acodec: str = NO_CODEC
    resolution: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @classmethod
    def from_format(cls, entry: Mapping[str, Any]) -> "MediaSource":
        """Build a source from one candidate-stream mapping.

        ``downloader_options.http_chunk_size`` becomes :attr:`chunk_size_hint`;
        a missing or null approximate size is treated as zero.
        """
        data = dict(entry)
        options = data.pop("downloader_options", None) or {}
        data.setdefault("chunk_size_hint", options.get("http_chunk_size") or 0)
        if data.get("filesize_approx") is None:
            data["filesize_approx"] = 0
        if data.get("http_headers") is None:
            data["http_headers"] = {}
        for codec in ("vcodec", "acodec"):
            if data.get(codec) is None:
                data[codec] = NO_CODEC
        return cls.model_validate(data)

    @property
    def has_video(self) -> bool:
        return self.vcodec != NO_CODEC

    @property
    def has_audio(self) -> bool:
        return self.acodec != NO_CODEC


def best_video(sources: Iterable[MediaSource]) -> Optional[MediaSource]:
    """Return the last candidate carrying a video codec.

    Metadata tools list formats from worst to best, so the last match wins.
    """
    best = None
    for source in sources:
        if source.has_video:
            best = source
    return best


def best_audio(sources: Iterable[MediaSource]) -> Optional[MediaSource]:
    """Return the last candidate carrying an audio codec."""
    best = None
    for source in sources:
        if source.has_audio:
            best = source
    return best


def select_formats(sources: Iterable[MediaSource]) -> List[MediaSource]:
    """Keep mp4 video-bearing candidates followed by m4a audio-only candidates."""
    sources = list(sources)
    video = [s for s in sources if s.ext == "mp4" and s.has_video]
    audio = [s for s in sources if s.ext == "m4a" and s.has_audio and not s.has_video]
    return video + audio


__all__ = ["MediaSource", "best_video", "best_audio", "select_formats", "NO_CODEC"]
