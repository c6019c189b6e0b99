from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from urllib import error, parse, request

from app.core.config import Settings

logger = logging.getLogger(__name__)

_HTML_USER_AGENT = "MeetingSyncBackend/1.0 (+thumbnail-fetcher)"
_MAX_PAGE_BYTES = 512_000
_CDN_LOOKUP_MAX_WORKERS = 4

_VIDEO_POSTER_PATTERNS = (
    re.compile(r"<video[^>]+poster=[\"']([^\"']+)[\"']", flags=re.IGNORECASE),
)
_META_IMAGE_PATTERNS = (
    re.compile(
        r"<meta[^>]+property=[\"']og:image[\"'][^>]+content=[\"']([^\"']+)[\"'][^>]*>",
        flags=re.IGNORECASE,
    ),
    re.compile(
        r"<meta[^>]+content=[\"']([^\"']+)[\"'][^>]+property=[\"']og:image[\"'][^>]*>",
        flags=re.IGNORECASE,
    ),
    re.compile(
        r"<meta[^>]+name=[\"']twitter:image[\"'][^>]+content=[\"']([^\"']+)[\"'][^>]*>",
        flags=re.IGNORECASE,
    ),
)


@dataclass(frozen=True)
class ThumbnailRequest:
    recording_id: str
    title: str
    share_url: str | None = None
    embed_url: str | None = None


ThumbnailLookup = Callable[[ThumbnailRequest], str | None]


class ThumbnailCascade:
    """Runs lookups in order and keeps the first URL any of them returns.

    A lookup that raises is logged and skipped, so the cascade itself never
    fails; ``None`` means every lookup came back empty.
    """

    def __init__(self, lookups: Sequence[ThumbnailLookup]) -> None:
        self.lookups = tuple(lookups)

    def resolve(self, thumbnail_request: ThumbnailRequest) -> str | None:
        for lookup in self.lookups:
            lookup_name = getattr(lookup, "name", type(lookup).__name__)
            try:
                thumbnail_url = lookup(thumbnail_request)
            except Exception as exc:
                logger.warning(
                    "Thumbnail lookup failed lookup=%s recording_id=%s error=%s",
                    lookup_name,
                    thumbnail_request.recording_id,
                    exc,
                )
                continue
            if thumbnail_url:
                logger.info(
                    "Thumbnail resolved lookup=%s recording_id=%s",
                    lookup_name,
                    thumbnail_request.recording_id,
                )
                return thumbnail_url
        logger.warning("No thumbnail resolved recording_id=%s", thumbnail_request.recording_id)
        return None


class CdnThumbnailLookup:
    name = "cdn"

    def __init__(self, base_urls: Sequence[str], timeout_seconds: float) -> None:
        self.base_urls = tuple(url.rstrip("/") for url in base_urls if url.strip())
        self.timeout_seconds = timeout_seconds

    def candidate_urls(self, thumbnail_request: ThumbnailRequest) -> list[str]:
        recording_id = parse.quote(thumbnail_request.recording_id, safe="")
        return [f"{base_url}/{recording_id}.jpg" for base_url in self.base_urls]

    def __call__(self, thumbnail_request: ThumbnailRequest) -> str | None:
        candidates = self.candidate_urls(thumbnail_request)
        if not candidates:
            return None

        with ThreadPoolExecutor(max_workers=min(len(candidates), _CDN_LOOKUP_MAX_WORKERS)) as executor:
            results = list(executor.map(self._exists, candidates))
        for candidate, exists in zip(candidates, results, strict=True):
            if exists:
                return candidate
        return None

    def _exists(self, url: str) -> bool:
        req = request.Request(url, headers={"User-Agent": _HTML_USER_AGENT}, method="HEAD")
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                status_code = getattr(response, "status", 200)
                return 200 <= status_code < 300
        except (error.URLError, TimeoutError, OSError):
            return False


class EmbedPosterLookup:
    name = "embed_poster"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds

    def __call__(self, thumbnail_request: ThumbnailRequest) -> str | None:
        if not thumbnail_request.embed_url:
            return None
        html = _fetch_html(thumbnail_request.embed_url, timeout_seconds=self.timeout_seconds)
        return _first_match(html, _VIDEO_POSTER_PATTERNS)


class ShareMetaImageLookup:
    name = "share_meta_image"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds

    def __call__(self, thumbnail_request: ThumbnailRequest) -> str | None:
        if not thumbnail_request.share_url:
            return None
        html = _fetch_html(thumbnail_request.share_url, timeout_seconds=self.timeout_seconds)
        return _first_match(html, _META_IMAGE_PATTERNS)


class ScreenshotServiceLookup:
    name = "screenshot_service"

    def __init__(self, service_url: str, token: str, timeout_seconds: float) -> None:
        self.service_url = service_url
        self.token = token
        self.timeout_seconds = timeout_seconds

    def __call__(self, thumbnail_request: ThumbnailRequest) -> str | None:
        if not self.service_url or not thumbnail_request.embed_url:
            return None

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = json.dumps(
            {
                "recording_id": thumbnail_request.recording_id,
                "share_url": thumbnail_request.share_url,
                "fathom_embed_url": thumbnail_request.embed_url,
            },
        ).encode("utf-8")
        req = request.Request(self.service_url, data=body, headers=headers, method="POST")
        with request.urlopen(req, timeout=self.timeout_seconds) as response:
            payload = json.loads(response.read().decode("utf-8"))

        if not isinstance(payload, dict) or not payload.get("success"):
            return None
        thumbnail_url = payload.get("thumbnail_url")
        if isinstance(thumbnail_url, str) and thumbnail_url.strip():
            return thumbnail_url.strip()
        return None


class PlaceholderLookup:
    name = "placeholder"

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("?")

    def __call__(self, thumbnail_request: ThumbnailRequest) -> str | None:
        if not self.base_url:
            return None
        first_letter = (thumbnail_request.title.strip() or "M")[0].upper()
        return f"{self.base_url}?text={parse.quote(first_letter, safe='')}"


def build_embed_url(
    *,
    recording_id: str | None,
    share_url: str | None,
    app_base_url: str = "https://app.fathom.video",
    embed_base_url: str = "https://fathom.video/embed",
) -> str | None:
    if recording_id:
        return f"{app_base_url.rstrip('/')}/recording/{recording_id}"
    if not share_url:
        return None

    path_parts = [part for part in parse.urlsplit(share_url).path.split("/") if part]
    if not path_parts:
        return None
    return f"{embed_base_url.rstrip('/')}/{path_parts[-1]}"


def build_thumbnail_cascade(settings: Settings) -> ThumbnailCascade:
    timeout_seconds = settings.thumbnail_lookup_timeout_seconds
    lookups: list[ThumbnailLookup] = [
        CdnThumbnailLookup(settings.thumbnail_cdn_base_urls, timeout_seconds),
        EmbedPosterLookup(timeout_seconds),
        ShareMetaImageLookup(timeout_seconds),
    ]
    if settings.enable_video_thumbnails and settings.thumbnail_service_url:
        lookups.append(
            ScreenshotServiceLookup(
                settings.thumbnail_service_url,
                settings.thumbnail_service_token,
                timeout_seconds,
            ),
        )
    lookups.append(PlaceholderLookup(settings.thumbnail_placeholder_base_url))
    return ThumbnailCascade(lookups)


def _fetch_html(url: str, *, timeout_seconds: float) -> str:
    req = request.Request(
        url,
        headers={"User-Agent": _HTML_USER_AGENT, "Accept": "text/html"},
        method="GET",
    )
    with request.urlopen(req, timeout=timeout_seconds) as response:
        return response.read(_MAX_PAGE_BYTES).decode("utf-8", errors="ignore")


def _first_match(html: str, patterns: Sequence[re.Pattern[str]]) -> str | None:
    for pattern in patterns:
        match = pattern.search(html)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None
