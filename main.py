"""Entry point for the remote video gateway.

Builds one :class:`VideoGateway` for the lifetime of the process, wires it
into the Flask app and releases pooled connections and temp files on exit.
"""
import atexit
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Dict, Mapping

import config_manager
from app import create_app
from video_gateway import VideoGateway

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(cfg: Mapping[str, Any]) -> None:
    log_cfg: Dict[str, Any] = dict(cfg.get("logging") or {})
    level_name = str(log_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    if not any(isinstance(handler, logging.StreamHandler) for handler in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
    log_file = str(log_cfg.get("file") or "").strip()
    if log_file:
        try:
            retention = max(1, int(log_cfg.get("retention_days") or 7))
        except (TypeError, ValueError):
            retention = 7
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", backupCount=retention, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    logging.getLogger("paramiko").setLevel(max(level, logging.WARNING))


def build_app():
    cfg = config_manager.load_config()
    configure_logging(cfg)
    gateway = VideoGateway.from_config(cfg)
    atexit.register(gateway.close)
    return create_app(gateway, cfg)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    build_app().run(host="0.0.0.0", port=port, threaded=True)
