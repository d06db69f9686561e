"""Tests for the Flask routes in front of the gateway."""

import pytest

from app import create_app, decode_video_id, encode_video_id
from conftest import video_path
from gateway_errors import InvalidRemotePath

DATA = bytes(i % 256 for i in range(1000))


@pytest.fixture
def client(gateway):
    app = create_app(gateway, {"DEFAULT_SERVER_ID": 1})
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def sample_id(sample_video):
    return encode_video_id(sample_video)


class TestVideoIds:
    def test_ids_decode_to_paths(self):
        path = "/srv/media/alice/clip ü.mp4"
        assert decode_video_id(encode_video_id(path)) == path

    def test_garbage_id(self):
        with pytest.raises(InvalidRemotePath):
            decode_video_id("%%%")


class TestRoutes:
    def test_list(self, client, sample_video):
        response = client.get("/api/videos-ssh/list?owner=alice")

        payload = response.get_json()
        assert response.status_code == 200
        assert payload["success"] is True
        assert payload["total_videos"] == 1
        assert payload["total_size"] == 1000
        assert decode_video_id(payload["videos"][0]["id"]) == sample_video

    def test_list_requires_owner(self, client):
        assert client.get("/api/videos-ssh/list").status_code == 400

    def test_list_of_missing_folder(self, client):
        response = client.get("/api/videos-ssh/list?owner=nobody")

        assert response.status_code == 404
        assert response.get_json()["code"] == "not_found"

    def test_info(self, client, sample_id, sample_video):
        response = client.get(f"/api/videos-ssh/info/{sample_id}")

        payload = response.get_json()
        assert response.status_code == 200
        assert payload["remote_path"] == sample_video
        assert payload["video_info"]["size"] == 1000
        assert payload["availability"]["available"] is True

    def test_info_for_missing_video_is_404(self, client):
        missing = encode_video_id(video_path("alice", "missing.mp4"))

        response = client.get(f"/api/videos-ssh/info/{missing}")

        assert response.status_code == 404
        assert response.get_json()["success"] is False

    def test_full_stream(self, client, sample_id):
        response = client.get(f"/api/videos-ssh/stream/{sample_id}")

        assert response.status_code == 200
        assert response.headers["Accept-Ranges"] == "bytes"
        assert response.headers["Content-Type"] == "video/mp4"
        assert response.data == DATA

    def test_range_stream(self, client, sample_id):
        response = client.get(f"/api/videos-ssh/stream/{sample_id}", headers={"Range": "bytes=900-"})

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 900-999/1000"
        assert response.headers["Content-Length"] == "100"
        assert response.data == DATA[900:]

    def test_malformed_range_stream(self, client, sample_id):
        response = client.get(f"/api/videos-ssh/stream/{sample_id}", headers={"Range": "bytes=abc"})

        assert response.status_code == 200
        assert response.data == DATA

    def test_stream_failure_is_structured(self, client, remote, sample_id):
        remote.truncate_downloads = True

        response = client.get(f"/api/videos-ssh/stream/{sample_id}")

        payload = response.get_json()
        assert response.status_code == 500
        assert payload["code"] == "incomplete_transfer"
        assert "details" in payload

    @pytest.mark.parametrize("method, suffix", [("get", "stream/{id}"), ("get", "thumbnail/{id}"), ("delete", "{id}")])
    def test_non_numeric_server_id_is_structured(self, client, sample_id, method, suffix):
        url = "/api/videos-ssh/" + suffix.format(id=sample_id)

        response = getattr(client, method)(url, headers={"X-Server-Id": "abc"})

        payload = response.get_json()
        assert response.status_code == 404
        assert payload["success"] is False
        assert payload["code"] == "unknown_server"

    def test_rename_with_non_numeric_server_id(self, client, sample_id):
        response = client.put(
            f"/api/videos-ssh/{sample_id}/rename?server_id=abc", json={"new_name": "holiday"}
        )

        assert response.status_code == 404
        assert response.get_json()["code"] == "unknown_server"

    def test_thumbnail(self, client, sample_id, extractor):
        first = client.get(f"/api/videos-ssh/thumbnail/{sample_id}")
        second = client.get(f"/api/videos-ssh/thumbnail/{sample_id}")

        assert first.status_code == 200
        assert first.mimetype == "image/jpeg"
        assert first.headers["Cache-Control"] == "public, max-age=86400"
        assert second.status_code == 200
        assert len(extractor.calls) == 1
        first.close()
        second.close()

    def test_delete(self, client, remote, sample_id, sample_video):
        response = client.delete(f"/api/videos-ssh/{sample_id}")

        assert response.status_code == 200
        assert sample_video not in remote.files

    def test_rename(self, client, remote, sample_id):
        response = client.put(f"/api/videos-ssh/{sample_id}/rename", json={"new_name": "renamed"})

        payload = response.get_json()
        assert response.status_code == 200
        assert payload["new_name"] == "renamed.mp4"
        assert decode_video_id(payload["new_id"]) == video_path("alice", "renamed.mp4")

    def test_rename_requires_name(self, client, sample_id):
        response = client.put(f"/api/videos-ssh/{sample_id}/rename", json={})

        assert response.status_code == 400

    def test_cache_status_and_clear(self, client, sample_id):
        client.get(f"/api/videos-ssh/stream/{sample_id}").close()

        status = client.get("/api/videos-ssh/cache/status").get_json()
        cleared = client.post("/api/videos-ssh/cache/clear").get_json()
        after = client.get("/api/videos-ssh/cache/status").get_json()

        assert status["cache"]["entries"] == 1
        assert cleared["removed_files"] == 1
        assert after["cache"]["entries"] == 0
        assert after["cache"]["total_bytes"] == 0
