import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from gateway_errors import UnknownServer

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.json")
DEFAULT_CONFIG_FILE = Path("config.default.json")
ENV_FILE = Path(".env")

DEFAULT_ENV_PLACEHOLDERS: Dict[str, str] = {
    "GATEWAY_SSH_PASSWORD": "",
}

DEFAULT_MEDIA_ROOT = "/usr/local/WowzaStreamingEngine/content"

DEFAULT_CONFIG_FALLBACK: Dict[str, Any] = {
    "CACHE_DIR": "./cache",
    "CACHE_QUOTA_MB": 10240,
    "THUMBNAIL_QUOTA_MB": 256,
    "THUMB_WIDTH": 320,
    "THUMB_HEIGHT": 180,
    "THUMB_JPEG_QUALITY": 70,
    "VIDEO_EXTENSIONS": [".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv", ".m4v"],
    "SSH_COMMAND_TIMEOUT": 30.0,
    "SSH_CONNECT_TIMEOUT": 10.0,
    "SSH_RETRIES": 2,
    "SSH_RETRY_BACKOFF": 0.5,
    "SSH_POOL_SIZE": 3,
    "DEFAULT_SERVER_ID": 1,
    "SERVERS": {},
    "STREAM_CHUNK_SIZE": 65536,
    "STREAM_CACHE_MAX_AGE": 3600,
    "THUMB_CACHE_MAX_AGE": 86400,
    "logging": {
        "level": "INFO",
        "file": "",
        "retention_days": 7,
    },
}

# Keys whose environment override is parsed as JSON instead of kept as text.
_JSON_ENV_KEYS = {"SERVERS", "VIDEO_EXTENSIONS", "logging"}


@dataclass(frozen=True)
class ServerTarget:
    server_id: int
    host: str
    port: int = 22
    username: str = ""
    password: Optional[str] = None
    key_filename: Optional[str] = None
    media_root: str = DEFAULT_MEDIA_ROOT

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}" if self.username else f"{self.host}:{self.port}"


def ensure_env_file(env_path: Path = ENV_FILE, placeholders: Optional[Dict[str, str]] = None) -> None:
    """Create or extend the .env file so every secret the gateway reads has a line."""

    placeholders = placeholders or DEFAULT_ENV_PLACEHOLDERS
    env_path = Path(env_path)
    if env_path.exists():
        lines = env_path.read_text(encoding="utf-8").splitlines()
    else:
        lines = ["# Auto-generated .env"]

    present = set(_extract_env_keys(lines))
    missing = [key for key in placeholders if key not in present]
    if not missing and env_path.exists():
        return
    lines.extend(f"{key}={placeholders[key]}" for key in missing)
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _extract_env_keys(lines: Sequence[str]) -> List[str]:
    keys: List[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key = stripped.split("=", 1)[0].strip()
        if key:
            keys.append(key)
    return keys


def load_env_file(env_path: Path = ENV_FILE) -> Dict[str, str]:
    """Populate os.environ from a .env file without overriding existing env vars."""

    env_path = Path(env_path)
    if not env_path.is_file():
        return {}
    loaded: Dict[str, str] = {}
    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, raw_value = stripped.split("=", 1)
        key = key.strip()
        if not key or os.environ.get(key) not in (None, ""):
            continue
        value = raw_value.strip().strip('"').strip("'")
        os.environ[key] = value
        loaded[key] = value
    return loaded


def ensure_config_file(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    default_fallback: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Write config.json with any gateway keys it is missing and return its contents."""

    default_data = _load_json(default_path) or dict(default_fallback or DEFAULT_CONFIG_FALLBACK)
    config_path = Path(config_path)
    config_data = (_load_json(config_path) or {}) if config_path.exists() else {}

    merged = dict(config_data)
    if _merge_defaults(merged, default_data) or not config_path.exists():
        _write_json(config_path, merged)
    return merged


def load_config(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    env_path: Path = ENV_FILE,
) -> Dict[str, Any]:
    """Return the merged gateway configuration with environment overrides applied."""

    ensure_env_file(env_path)
    load_env_file(env_path)
    ensure_config_file(config_path, default_path)

    default_data = _load_json(default_path) or dict(DEFAULT_CONFIG_FALLBACK)
    config_data = _load_json(config_path) or {}
    merged = _deep_merge(_deep_merge(DEFAULT_CONFIG_FALLBACK, default_data), config_data)

    for key, value in _collect_environment_overrides(merged).items():
        merged[key] = value
    merged["VIDEO_EXTENSIONS"] = normalize_extensions(merged.get("VIDEO_EXTENSIONS"))
    return merged


def normalize_extensions(value: Any) -> List[str]:
    if isinstance(value, str):
        items = [part for part in value.replace(";", ",").split(",")]
    elif isinstance(value, (list, tuple, set)):
        items = [str(part) for part in value]
    else:
        items = []
    result: List[str] = []
    for item in items:
        text = item.strip().lower()
        if not text:
            continue
        ext = text if text.startswith(".") else f".{text}"
        if ext not in result:
            result.append(ext)
    return result or list(DEFAULT_CONFIG_FALLBACK["VIDEO_EXTENSIONS"])


def build_server_targets(cfg: Mapping[str, Any]) -> Dict[int, ServerTarget]:
    """Create ServerTarget records from the ``SERVERS`` mapping, skipping invalid ones."""

    raw_servers = cfg.get("SERVERS") or {}
    if isinstance(raw_servers, list):
        raw_servers = {str(item.get("id")): item for item in raw_servers if isinstance(item, dict)}
    if not isinstance(raw_servers, dict):
        logger.warning("SERVERS must be a mapping of server id to connection settings")
        return {}

    default_password = os.getenv("GATEWAY_SSH_PASSWORD") or None
    targets: Dict[int, ServerTarget] = {}
    for raw_id, entry in raw_servers.items():
        try:
            server_id = int(raw_id)
        except (TypeError, ValueError):
            logger.warning("Server id '%s' is not numeric; skipped", raw_id)
            continue
        if not isinstance(entry, dict) or not str(entry.get("host") or "").strip():
            logger.warning("Server %s has no host configured; skipped", server_id)
            continue
        try:
            port = int(entry.get("port") or 22)
        except (TypeError, ValueError):
            logger.warning("Server %s has an invalid port; skipped", server_id)
            continue
        targets[server_id] = ServerTarget(
            server_id=server_id,
            host=str(entry["host"]).strip(),
            port=port,
            username=str(entry.get("username") or "").strip(),
            password=entry.get("password") or default_password,
            key_filename=entry.get("key_filename") or None,
            media_root=str(entry.get("media_root") or DEFAULT_MEDIA_ROOT).rstrip("/") or DEFAULT_MEDIA_ROOT,
        )
    if not targets:
        logger.warning("No remote servers were found in configuration")
    return targets


def resolve_server(targets: Mapping[int, ServerTarget], server_id: Any) -> ServerTarget:
    try:
        key = int(server_id)
    except (TypeError, ValueError):
        raise UnknownServer(f"Invalid server id '{server_id}'")
    target = targets.get(key)
    if target is None:
        raise UnknownServer(f"Unknown server {key}")
    return target


def _collect_environment_overrides(base: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in base.keys():
        env_value = os.getenv(key)
        if env_value is None or env_value == "":
            continue
        if key in _JSON_ENV_KEYS:
            try:
                overrides[key] = json.loads(env_value)
            except json.JSONDecodeError:
                if key == "VIDEO_EXTENSIONS":
                    overrides[key] = env_value
                else:
                    logger.warning("Ignoring %s override: value is not valid JSON", key)
        else:
            overrides[key] = _coerce_like(base.get(key), env_value)
    servers_env = os.getenv("GATEWAY_SERVERS")
    if servers_env:
        try:
            overrides["SERVERS"] = json.loads(servers_env)
        except json.JSONDecodeError:
            logger.warning("Ignoring GATEWAY_SERVERS: value is not valid JSON")
    return overrides


def _coerce_like(template: Any, raw: str) -> Any:
    if isinstance(template, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(template, int):
        try:
            return int(raw)
        except ValueError:
            return template
    if isinstance(template, float):
        try:
            return float(raw)
        except ValueError:
            return template
    return raw


def _deep_merge(defaults: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key in defaults.keys() | overrides.keys():
        default_value = defaults.get(key)
        override_value = overrides.get(key)
        if isinstance(default_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(default_value, override_value)
        elif override_value is not None:
            result[key] = override_value
        else:
            result[key] = default_value
    return result


def _merge_defaults(target: Dict[str, Any], defaults: Dict[str, Any]) -> bool:
    changed = False
    for key, value in defaults.items():
        if key not in target:
            target[key] = value
            changed = True
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            changed = _merge_defaults(target[key], value) or changed
    return changed


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    path = Path(path)
    try:
        if not path.is_file():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load JSON config '%s': %s", path, exc)
        return None


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path = Path(path)
    try:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
    except OSError as exc:
        logger.warning("Failed to write JSON config '%s': %s", path, exc)
