import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from src.services.errors import FetchFailure
from src.services.youtube import (
    YouTubeFetcher,
    live_status_of,
    parse_duration,
    uploads_playlist_for,
)


def playlist_response(*video_ids):
    return {
        "items": [
            {
                "snippet": {
                    "title": f"Video {video_id}",
                    "channelId": "UCabc",
                    "channelTitle": "Channel",
                    "resourceId": {"videoId": video_id},
                    "thumbnails": {"high": {"url": f"https://img/{video_id}.jpg"}},
                },
                "contentDetails": {"videoId": video_id, "videoPublishedAt": "2026-03-01T10:00:00Z"},
            }
            for video_id in video_ids
        ]
    }


def http_error(status: int) -> HttpError:
    content = json.dumps({"error": {"code": status, "message": "quotaExceeded"}}).encode()
    return HttpError(httplib2.Response({"status": str(status)}), content)


@pytest.fixture
def client():
    return MagicMock()


class TestHelpers:
    def test_parse_duration(self):
        assert parse_duration("PT1H2M3S") == 3723
        assert parse_duration("PT45S") == 45
        assert parse_duration("P1DT1S") == 86401
        assert parse_duration("") == 0
        assert parse_duration("garbage") == 0

    def test_uploads_playlist_mapping(self):
        assert uploads_playlist_for("UCabc123") == "UUabc123"
        assert uploads_playlist_for("handle") is None

    def test_live_status(self):
        assert live_status_of({"snippet": {"liveBroadcastContent": "upcoming"}}) == "upcoming"
        assert live_status_of({"snippet": {}}) == "none"
        ended = {
            "snippet": {"liveBroadcastContent": "none"},
            "liveStreamingDetails": {"actualEndTime": "2026-03-01T12:00:00Z"},
        }
        assert live_status_of(ended) == "completed"


class TestFetchRecentContent:
    def test_reads_uploads_playlist(self, client):
        client.playlistItems.return_value.list.return_value.execute.return_value = playlist_response("a", "b")
        fetcher = YouTubeFetcher(client=client)

        items = fetcher.fetch_recent_content("UCabc")

        client.playlistItems.return_value.list.assert_called_once_with(
            part="snippet,contentDetails", playlistId="UUabc", maxResults=10
        )
        client.channels.assert_not_called()
        assert [item.content_id for item in items] == ["a", "b"]
        assert items[0].published_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert items[0].thumbnail_url == "https://img/a.jpg"

    def test_custom_ids_are_resolved_once(self, client):
        client.channels.return_value.list.return_value.execute.return_value = {
            "items": [{"contentDetails": {"relatedPlaylists": {"uploads": "UUxyz"}}}]
        }
        client.playlistItems.return_value.list.return_value.execute.return_value = playlist_response()
        fetcher = YouTubeFetcher(client=client)
        assert fetcher.needs_lookup("UCabc") is False
        assert fetcher.needs_lookup("legacy-name") is True

        fetcher.fetch_recent_content("legacy-name")
        fetcher.fetch_recent_content("legacy-name")

        assert client.channels.return_value.list.call_count == 1
        assert fetcher.needs_lookup("legacy-name") is False

    def test_unknown_channel(self, client):
        client.channels.return_value.list.return_value.execute.return_value = {"items": []}
        with pytest.raises(FetchFailure):
            YouTubeFetcher(client=client).fetch_recent_content("missing")

    def test_http_error_becomes_fetch_failure(self, client):
        client.playlistItems.return_value.list.return_value.execute.side_effect = http_error(403)
        with pytest.raises(FetchFailure):
            YouTubeFetcher(client=client).fetch_recent_content("UCabc")

    def test_network_error_becomes_fetch_failure(self, client):
        client.playlistItems.return_value.list.return_value.execute.side_effect = ConnectionResetError()
        with pytest.raises(FetchFailure):
            YouTubeFetcher(client=client).fetch_recent_content("UCabc")


class TestFetchVideoDetails:
    def test_parses_details(self, client):
        client.videos.return_value.list.return_value.execute.return_value = {
            "items": [
                {
                    "id": "v1",
                    "snippet": {"title": "Live now", "channelId": "UCabc", "liveBroadcastContent": "live"},
                    "contentDetails": {"duration": "PT10M"},
                    "statistics": {"viewCount": "42"},
                }
            ]
        }

        [detail] = YouTubeFetcher(client=client).fetch_video_details(["v1"])

        assert detail.live_status == "live"
        assert detail.duration_seconds == 600
        assert detail.view_count == 42
        client.videos.return_value.list.assert_called_once_with(
            part="snippet,contentDetails,statistics,liveStreamingDetails", id="v1"
        )

    def test_empty_ids_make_no_call(self, client):
        assert YouTubeFetcher(client=client).fetch_video_details([]) == []
        client.videos.assert_not_called()

    def test_more_than_fifty_ids_is_rejected(self, client):
        with pytest.raises(ValueError):
            YouTubeFetcher(client=client).fetch_video_details([f"v{i}" for i in range(51)])
        client.videos.assert_not_called()
