import logging
import re
from datetime import datetime
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from src.config import Config
from src.db.models import ContentItem, VideoDetail
from src.services.errors import FetchFailure

logger = logging.getLogger(__name__)

MAX_IDS_PER_CALL = 50


def get_youtube_client(api_key: Optional[str] = None):
    return build("youtube", "v3", developerKey=api_key or Config.YOUTUBE_API_KEY, cache_discovery=False)


def parse_duration(duration: str) -> int:
    """Parse ISO 8601 duration to seconds."""
    pattern = re.compile(r"P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")
    match = pattern.fullmatch(duration or "")
    if not match:
        return 0
    days, hours, minutes, seconds = (int(group or 0) for group in match.groups())
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def parse_published_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def uploads_playlist_for(channel_id: str) -> Optional[str]:
    """Channel ids starting with UC map to an uploads playlist starting with UU."""
    if channel_id.startswith("UC") and len(channel_id) > 2:
        return "UU" + channel_id[2:]
    return None


def best_thumbnail(snippet: dict, video_id: str) -> str:
    thumbnails = snippet.get("thumbnails", {})
    return (
        thumbnails.get("maxres", {}).get("url")
        or thumbnails.get("high", {}).get("url")
        or thumbnails.get("medium", {}).get("url")
        or f"https://img.youtube.com/vi/{video_id}/hqdefault.jpg"
    )


def live_status_of(item: dict) -> str:
    details = item.get("liveStreamingDetails") or {}
    if details.get("actualEndTime"):
        return "completed"
    return item.get("snippet", {}).get("liveBroadcastContent", "none")


class YouTubeFetcher:
    """Fetches channel uploads through the YouTube Data API.

    Each call site reserves quota first. fetch_recent_content costs one
    extra `channels` call when needs_lookup() is true for the channel.
    """

    platform = "youtube"

    def __init__(self, api_key: Optional[str] = None, client=None):
        self.api_key = api_key
        self._client = client
        self._uploads: dict[str, str] = {}

    @property
    def client(self):
        if self._client is None:
            self._client = get_youtube_client(self.api_key)
        return self._client

    def _execute(self, request, what: str) -> dict:
        try:
            return request.execute()
        except HttpError as e:
            logger.error(f"YouTube API error during {what}: {e}")
            raise FetchFailure(f"YouTube API error during {what}: {e}") from e
        except OSError as e:
            logger.error(f"Network error during {what}: {e}")
            raise FetchFailure(f"Network error during {what}: {e}") from e

    def needs_lookup(self, channel_id: str) -> bool:
        return channel_id not in self._uploads and uploads_playlist_for(channel_id) is None

    def resolve_uploads_playlist(self, channel_id: str) -> str:
        """Resolve a channel's uploads playlist. Costs one `channels` call unless derivable."""
        if channel_id in self._uploads:
            return self._uploads[channel_id]

        playlist_id = uploads_playlist_for(channel_id)
        if playlist_id is None:
            response = self._execute(
                self.client.channels().list(part="contentDetails", id=channel_id),
                f"channel lookup for {channel_id}",
            )
            if not response.get("items"):
                raise FetchFailure(f"Channel not found: {channel_id}")
            playlist_id = response["items"][0]["contentDetails"]["relatedPlaylists"]["uploads"]

        self._uploads[channel_id] = playlist_id
        return playlist_id

    def fetch_recent_content(self, channel_id: str, max_results: int = 10) -> list[ContentItem]:
        """Latest uploads of a channel, newest first. One `playlistItems` call."""
        playlist_id = self.resolve_uploads_playlist(channel_id)
        response = self._execute(
            self.client.playlistItems().list(
                part="snippet,contentDetails",
                playlistId=playlist_id,
                maxResults=max_results,
            ),
            f"uploads of {channel_id}",
        )

        items = []
        for entry in response.get("items", []):
            snippet = entry.get("snippet", {})
            video_id = snippet.get("resourceId", {}).get("videoId") or entry.get(
                "contentDetails", {}
            ).get("videoId")
            if not video_id:
                continue
            published = entry.get("contentDetails", {}).get("videoPublishedAt") or snippet.get(
                "publishedAt"
            )
            items.append(
                ContentItem(
                    content_id=video_id,
                    channel_id=snippet.get("channelId", channel_id),
                    title=snippet.get("title", ""),
                    platform=self.platform,
                    published_at=parse_published_at(published),
                    thumbnail_url=best_thumbnail(snippet, video_id),
                    channel_name=snippet.get("channelTitle"),
                )
            )
        return items

    def fetch_video_details(self, video_ids: list[str]) -> list[VideoDetail]:
        """Details for up to 50 videos. One `videos` call."""
        if not video_ids:
            return []
        if len(video_ids) > MAX_IDS_PER_CALL:
            raise ValueError(f"At most {MAX_IDS_PER_CALL} ids per call, got {len(video_ids)}")

        response = self._execute(
            self.client.videos().list(
                part="snippet,contentDetails,statistics,liveStreamingDetails",
                id=",".join(video_ids),
            ),
            f"details of {len(video_ids)} videos",
        )

        details = []
        for item in response.get("items", []):
            snippet = item.get("snippet", {})
            view_count = item.get("statistics", {}).get("viewCount")
            details.append(
                VideoDetail(
                    video_id=item["id"],
                    channel_id=snippet.get("channelId", ""),
                    title=snippet.get("title", ""),
                    duration_seconds=parse_duration(item.get("contentDetails", {}).get("duration", "")),
                    live_status=live_status_of(item),
                    published_at=parse_published_at(snippet.get("publishedAt")),
                    view_count=int(view_count) if view_count is not None else None,
                )
            )
        return details
