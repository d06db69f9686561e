"""Flask routes exposing the video gateway over HTTP.

Authentication and tenant ownership checks live in front of these routes;
they only decode the video id, pick the server and translate gateway errors
into JSON responses.
"""

import base64
import binascii
import logging
import re
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_file

from gateway_errors import GatewayError, InvalidRemotePath
from video_gateway import VideoGateway

logger = logging.getLogger(__name__)

_bp = Blueprint("videos_ssh", __name__, url_prefix="/api/videos-ssh")

# Status codes passed through as-is; every other failure is reported as 500.
_CLIENT_STATUSES = {400, 403, 404, 409, 416}
_VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+=*$")


def encode_video_id(remote_path: str) -> str:
    return base64.urlsafe_b64encode(remote_path.encode("utf-8")).decode("ascii").rstrip("=")


def decode_video_id(video_id: str) -> str:
    text = (video_id or "").strip()
    if not _VIDEO_ID_PATTERN.match(text):
        raise InvalidRemotePath("Invalid video id")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        raise InvalidRemotePath("Invalid video id")


def _gateway() -> VideoGateway:
    return current_app.extensions["video_gateway"]


def _server_id() -> Any:
    value = request.args.get("server_id") or request.headers.get("X-Server-Id")
    if value:
        return value
    return current_app.config.get("DEFAULT_SERVER_ID", 1)


def _error_response(exc: GatewayError, message: Optional[str] = None):
    status = exc.status if exc.status in _CLIENT_STATUSES else 500
    payload: Dict[str, Any] = {"success": False, "error": message or exc.message, "code": exc.code}
    if message:
        payload["details"] = exc.message
    return jsonify(payload), status


@_bp.route("/list", methods=["GET"])
def list_videos():
    owner = (request.args.get("owner") or request.headers.get("X-Owner") or "").strip()
    if not owner:
        return jsonify({"success": False, "error": "owner is required", "code": "invalid_request"}), 400
    folder = request.args.get("folder") or None
    server_id = _server_id()
    gateway = _gateway()
    try:
        videos = gateway.list_videos(server_id, owner, folder)
    except GatewayError as exc:
        logger.warning("Listing %s on server %s failed: %s", owner, server_id, exc.message)
        return _error_response(exc, "Unable to list videos from server")
    for video in videos:
        video["id"] = encode_video_id(video["path"])
    payload = {"success": True, "videos": videos, "server_id": server_id, "owner": owner}
    payload.update(gateway.summarize(videos))
    return jsonify(payload)


@_bp.route("/info/<video_id>", methods=["GET"])
def video_info(video_id: str):
    gateway = _gateway()
    server_id = _server_id()
    try:
        remote_path = decode_video_id(video_id)
        availability = gateway.check_availability(server_id, remote_path)
        if not availability["available"]:
            return jsonify({"success": False, "error": availability["reason"], "code": "not_found"}), 404
        info = gateway.get_video_info(server_id, remote_path)
    except GatewayError as exc:
        return _error_response(exc, "Unable to read video information")
    return jsonify(
        {
            "success": True,
            "video_info": info,
            "availability": availability,
            "video_id": video_id,
            "remote_path": remote_path,
        }
    )


@_bp.route("/stream/<video_id>", methods=["GET"])
def stream_video(video_id: str):
    gateway = _gateway()
    try:
        remote_path = decode_video_id(video_id)
        prepared = gateway.open_stream(_server_id(), remote_path, request.headers.get("Range"), video_id)
    except GatewayError as exc:
        logger.warning("Stream of %s failed: %s", video_id, exc.message)
        return _error_response(exc, "Unable to stream video")
    body = prepared.body
    response = Response(
        body if body is not None else b"",
        status=prepared.status,
        headers=prepared.headers,
        direct_passthrough=True,
    )
    if body is not None:
        response.call_on_close(body.close)
    return response


@_bp.route("/thumbnail/<video_id>", methods=["GET"])
def video_thumbnail(video_id: str):
    gateway = _gateway()
    try:
        remote_path = decode_video_id(video_id)
        result = gateway.generate_thumbnail(_server_id(), remote_path, video_id, request.args.get("t"))
    except GatewayError as exc:
        logger.warning("Thumbnail for %s failed: %s", video_id, exc.message)
        return _error_response(exc, "Thumbnail not available")
    response = send_file(result["thumbnail_path"], mimetype="image/jpeg", conditional=True)
    response.headers["Cache-Control"] = f"public, max-age={gateway.thumb_max_age}"
    return response


@_bp.route("/<video_id>", methods=["DELETE"])
def delete_video(video_id: str):
    try:
        remote_path = decode_video_id(video_id)
        _gateway().delete_video(_server_id(), remote_path)
    except GatewayError as exc:
        return _error_response(exc, "Unable to delete video")
    return jsonify({"success": True, "message": "Video removed from server"})


@_bp.route("/<video_id>/rename", methods=["PUT"])
def rename_video(video_id: str):
    data = request.get_json(silent=True) or {}
    new_name = str(data.get("new_name") or "").strip()
    if not new_name:
        return jsonify({"success": False, "error": "new_name is required", "code": "invalid_request"}), 400
    try:
        remote_path = decode_video_id(video_id)
        result = _gateway().rename_video(_server_id(), remote_path, new_name)
    except GatewayError as exc:
        return _error_response(exc, "Unable to rename video")
    result["new_id"] = encode_video_id(result["new_path"])
    return jsonify({"success": True, "message": "Video renamed", **result})


@_bp.route("/cache/status", methods=["GET"])
def cache_status():
    return jsonify({"success": True, "cache": _gateway().cache_report()})


@_bp.route("/cache/clear", methods=["POST"])
def cache_clear():
    result = _gateway().clear_cache()
    removed = result["removed_files"]
    return jsonify({"success": True, "removed_files": removed, "message": f"Cache cleared: {removed} files removed"})


def create_app(gateway: VideoGateway, cfg: Optional[Dict[str, Any]] = None) -> Flask:
    cfg = cfg or {}
    app = Flask(__name__)
    app.config["DEFAULT_SERVER_ID"] = cfg.get("DEFAULT_SERVER_ID", 1)
    app.extensions["video_gateway"] = gateway
    app.register_blueprint(_bp)

    @app.errorhandler(GatewayError)
    def _unhandled_gateway_error(exc: GatewayError):
        return _error_response(exc)

    return app
