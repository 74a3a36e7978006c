"""
PrintStreamer Configuration
===========================

This module handles configuration loading for the print streamer.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    PRINTSTREAMER_STREAM_SOURCE         -> stream.source
    PRINTSTREAMER_MOONRAKER_URL         -> moonraker.base_url
    PRINTSTREAMER_MOONRAKER_API_KEY     -> moonraker.api_key
    PRINTSTREAMER_AUDIO_FOLDER          -> audio.folder
    PRINTSTREAMER_YOUTUBE_CLIENT_ID     -> youtube.oauth.client_id
    PRINTSTREAMER_YOUTUBE_CLIENT_SECRET -> youtube.oauth.client_secret
    PRINTSTREAMER_PORT                  -> server.port
    PRINTSTREAMER_LOG_LEVEL             -> logging.level
    PORT                                -> server.port

Example:
    from printstreamer.config import settings

    print(settings.stream.source)
    print(settings.timelapse.last_layer_offset)
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# =============================================================================
# Configuration Models
# =============================================================================

class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    public_base_url: str = Field(
        default="http://127.0.0.1:8080",
        description="Base URL the pipeline stages use to read each other",
    )


class StreamConfig(BaseModel):
    """Camera source and live output configuration."""

    source: str = Field(default="", description="Upstream MJPEG camera URL")
    target_fps: int = Field(default=30, ge=1, le=60, description="Output frame rate")
    bitrate_kbps: int = Field(default=800, ge=100, description="Output video bitrate")
    local_enabled: bool = Field(
        default=True,
        description="Keep the local pipeline running when no broadcast is active",
    )
    mix_enabled: bool = Field(
        default=True,
        description="Serve the mixed output; broadcasting needs it",
    )
    encoder_path: str = Field(default="ffmpeg", description="Encoder binary")
    fallback_jpeg_path: str = Field(
        default="fallback_black.jpg",
        description="Fallback JPEG served when the camera is unavailable",
    )
    fallback_fps: float = Field(default=6.0, gt=0, description="Fallback frame rate")
    upstream_probe_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Interval between upstream probes while in fallback",
    )
    publish_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Publisher restarts on broken pipe before escalation",
    )
    publish_retry_backoff_seconds: float = Field(
        default=1.5,
        ge=0,
        description="Linear backoff step between publisher restarts",
    )


class AudioConfig(BaseModel):
    """Background music configuration."""

    enabled: bool = Field(default=True, description="Serve music on the audio stage")
    folder: str = Field(default="audio", description="Folder with audio tracks")
    bitrate: str = Field(default="192k", description="MP3 bitrate")
    chunk_size: int = Field(default=8192, ge=512, description="Fan-out chunk size")
    subscriber_queue_size: int = Field(
        default=8,
        ge=1,
        description="Chunks buffered per subscriber before dropping",
    )


class MoonrakerConfig(BaseModel):
    """Printer API connection."""

    base_url: str = Field(default="http://localhost:7125/", description="Moonraker base URL")
    api_key: Optional[str] = Field(default=None, description="Moonraker API key")
    auth_header: Optional[str] = Field(
        default=None,
        description="Header carrying the key, or 'Name: value' for a custom header",
    )
    timeout_seconds: float = Field(default=5.0, gt=0, description="Per-request timeout")


DEFAULT_OVERLAY_TEMPLATE = (
    "Nozzle: {nozzle:0}°C/{nozzleTarget:0}°C | Bed: {bed:0}°C/{bedTarget:0}°C"
    " | Layer {layers} | {progress:0}%\n"
    "Spd:{speed}mm/s | Flow:{flow} | Fil:{filament}m | ETA:{eta:%H:%M}"
)


class OverlayConfig(BaseModel):
    """On-video text overlay configuration."""

    enabled: bool = Field(default=True, description="Render the text overlay")
    template: str = Field(default=DEFAULT_OVERLAY_TEMPLATE, description="Overlay template")
    font_file: str = Field(
        default="/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
        description="Font used by drawtext",
    )
    font_size: int = Field(default=16, ge=6, description="Font size")
    font_color: str = Field(default="white", description="Font color")
    box: bool = Field(default=True, description="Draw a background box")
    box_color: str = Field(default="black@0.4", description="Box color")
    box_border_w: int = Field(default=8, ge=0, description="Box border width")
    box_height: int = Field(default=75, ge=0, description="Box height in pixels")
    x: Optional[str] = Field(default=None, description="Text x expression")
    y: Optional[str] = Field(default=None, description="Text y expression")
    refresh_ms: int = Field(default=1000, ge=200, description="Refresh period (floor 200 ms)")
    quality: int = Field(default=5, ge=2, le=10, description="MJPEG quality (2 best)")
    text_dir: Optional[str] = Field(default=None, description="Directory for the text file")


class OAuthConfig(BaseModel):
    """OAuth client credentials."""

    client_id: Optional[str] = Field(default=None, description="OAuth client id")
    client_secret: Optional[str] = Field(default=None, description="OAuth client secret")
    refresh_token: Optional[str] = Field(default=None, description="Seed refresh token")
    auth_code: Optional[str] = Field(default=None, description="Pre-supplied auth code")
    auth_code_file: Optional[str] = Field(default=None, description="File holding an auth code")
    redirect_uri: str = Field(
        default="urn:ietf:wg:oauth:2.0:oob",
        description="Redirect URI for the manual code flow",
    )


class LiveBroadcastConfig(BaseModel):
    """Live broadcast defaults."""

    enabled: bool = Field(default=True, description="Start a broadcast when a print starts")
    title: str = Field(default="Print Streamer Live", description="Broadcast title")
    description: str = Field(default="Live 3D print", description="Broadcast description")
    privacy: str = Field(default="unlisted", description="public, unlisted or private")
    category_id: str = Field(default="28", description="Video category")
    end_stream_after_print: bool = Field(default=True, description="End broadcast when the print ends")
    ingestion_timeout_seconds: float = Field(default=30.0, gt=0, description="Ingestion wait")
    transition_max_wait_seconds: float = Field(default=180.0, gt=0, description="Go-live budget")
    transition_max_attempts: int = Field(default=12, ge=1, description="Go-live attempts")


class PlaylistConfig(BaseModel):
    """Playlist that collects finished broadcasts and timelapses."""

    name: Optional[str] = Field(default=None, description="Playlist name")
    privacy: str = Field(default="unlisted", description="Playlist privacy")


class TimelapseUploadConfig(BaseModel):
    """Timelapse upload configuration."""

    enabled: bool = Field(default=False, description="Upload finished timelapses")
    privacy: str = Field(default="unlisted", description="Upload privacy")
    category_id: str = Field(default="28", description="Upload category")


class PollingConfig(BaseModel):
    """Provider API throttling and polling behaviour."""

    enabled: bool = Field(default=True, description="Throttle provider calls")
    requests_per_minute: int = Field(default=100, ge=1, description="Sliding window limit")
    cache_seconds: float = Field(default=5.0, ge=0, description="Response cache TTL")
    base_interval_seconds: float = Field(default=15.0, gt=0, description="Base poll interval")
    min_interval_seconds: float = Field(default=10.0, gt=0, description="Poll interval floor")
    max_interval_seconds: float = Field(default=60.0, gt=0, description="Poll interval cap")
    idle_threshold_minutes: float = Field(default=5.0, gt=0, description="Idle threshold")
    backoff_multiplier: float = Field(default=1.5, ge=1.0, description="Backoff multiplier")
    max_jitter_seconds: float = Field(default=5.0, ge=0, description="Jitter added to waits")


class YouTubeConfig(BaseModel):
    """Live broadcast provider configuration."""

    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    live_broadcast: LiveBroadcastConfig = Field(default_factory=LiveBroadcastConfig)
    playlist: PlaylistConfig = Field(default_factory=PlaylistConfig)
    timelapse_upload: TimelapseUploadConfig = Field(default_factory=TimelapseUploadConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    token_file: str = Field(default="youtube_token.json", description="OAuth token store")


class TimelapseConfig(BaseModel):
    """Timelapse capture and early finalize thresholds."""

    main_folder: str = Field(default="timelapse", description="Timelapse root folder")
    period_seconds: float = Field(default=60.0, gt=0, description="Capture period")
    frame_rate: int = Field(default=30, ge=1, description="Assembled video frame rate")
    final_hold_seconds: float = Field(default=1.0, ge=0, description="Hold on last frame")
    capture_timeout_seconds: float = Field(default=10.0, gt=0, description="Frame fetch timeout")
    start_after_layer1: bool = Field(default=True, description="Hold capture until layer 1")
    last_layer_offset: int = Field(default=1, ge=0, description="Layers before the end")
    last_layer_remaining_seconds: float = Field(default=30.0, ge=0, description="Seconds left")
    last_layer_progress_percent: float = Field(default=98.5, ge=0, le=100, description="Progress %")


class OrchestratorConfig(BaseModel):
    """Printer polling cadence and finalize timing."""

    poll_interval_seconds: float = Field(default=10.0, gt=0, description="Base poll interval")
    fast_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Near-completion interval")
    idle_finalize_delay_seconds: float = Field(default=20.0, ge=0, description="Idle before finalize")
    offline_grace_minutes: float = Field(default=10.0, ge=0, description="Offline grace period")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for PrintStreamer.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    moonraker: MoonrakerConfig = Field(default_factory=MoonrakerConfig)
    overlay: OverlayConfig = Field(default_factory=OverlayConfig)
    youtube: YouTubeConfig = Field(default_factory=YouTubeConfig)
    timelapse: TimelapseConfig = Field(default_factory=TimelapseConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def oauth_configured(self) -> bool:
        """Whether OAuth client credentials are present."""
        oauth = self.youtube.oauth
        return bool(oauth.client_id and oauth.client_secret)


# =============================================================================
# Configuration Loading
# =============================================================================

def find_config_path() -> Optional[str]:
    """Return the first existing config file in the usual locations."""
    search_paths = [
        Path("config.yaml"),
        Path("config.yml"),
        Path("/app/config.yaml"),
        Path(__file__).parent.parent.parent / "config.yaml",
    ]
    for path in search_paths:
        if path.exists():
            return str(path)
    return None


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    if config_path is None:
        config_path = find_config_path()

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    if env_source := os.environ.get("PRINTSTREAMER_STREAM_SOURCE"):
        config_data.setdefault("stream", {})["source"] = env_source

    if env_url := os.environ.get("PRINTSTREAMER_MOONRAKER_URL"):
        config_data.setdefault("moonraker", {})["base_url"] = env_url
    if env_key := os.environ.get("PRINTSTREAMER_MOONRAKER_API_KEY"):
        config_data.setdefault("moonraker", {})["api_key"] = env_key

    if env_folder := os.environ.get("PRINTSTREAMER_AUDIO_FOLDER"):
        config_data.setdefault("audio", {})["folder"] = env_folder

    if env_cid := os.environ.get("PRINTSTREAMER_YOUTUBE_CLIENT_ID"):
        config_data.setdefault("youtube", {}).setdefault("oauth", {})["client_id"] = env_cid
    if env_secret := os.environ.get("PRINTSTREAMER_YOUTUBE_CLIENT_SECRET"):
        config_data.setdefault("youtube", {}).setdefault("oauth", {})["client_secret"] = env_secret

    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("PRINTSTREAMER_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    if env_log := os.environ.get("PRINTSTREAMER_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def check_required(settings: Settings) -> List[str]:
    """Return the dotted names of required keys that are missing."""
    missing = []
    if not settings.stream.source.strip():
        missing.append("stream.source")
    return missing


def config_help() -> str:
    """Render every recognized key with its description."""
    lines = ["Recognized configuration keys:"]

    def walk(model: type, prefix: str) -> None:
        for name, field in model.model_fields.items():
            annotation = field.annotation
            if isinstance(annotation, type) and issubclass(annotation, BaseModel):
                walk(annotation, f"{prefix}{name}.")
            else:
                lines.append(f"  {prefix}{name}: {field.description or ''}")

    walk(Settings, "")
    return "\n".join(lines)


def ensure_required(settings: Settings) -> None:
    """
    Fail fast on missing required keys.

    Raises:
        ConfigurationError: With a help dump of recognized keys
    """
    missing = check_required(settings)
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}\n\n{config_help()}"
        )


def save_config(settings: Settings, config_path: str) -> None:
    """Write settings back to a YAML file."""
    tmp_path = f"{config_path}.tmp"
    with open(tmp_path, "w") as f:
        yaml.safe_dump(settings.model_dump(mode="json"), f, sort_keys=False, allow_unicode=True)
    os.replace(tmp_path, config_path)
    logger.info(f"Saved config to: {config_path}")


def apply_settings(current: BaseModel, new: BaseModel) -> None:
    """
    Copy validated values onto an existing settings tree in place.

    Services hold references to the sub-models, so replacing the tree
    would leave them reading stale values.
    """
    for name in type(current).model_fields:
        value = getattr(new, name)
        existing = getattr(current, name)
        if isinstance(existing, BaseModel) and isinstance(value, BaseModel):
            apply_settings(existing, value)
        else:
            setattr(current, name, value)


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
