"""Application configuration."""
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./peerlink.db"

    # ICE (public STUN relays, no credentials)
    ice_server_urls: List[str] = [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ]

    # Signal relay
    signal_send_max_attempts: int = 4
    signal_send_backoff_base: float = 0.25
    signal_send_backoff_max: float = 4.0
    # Oldest stored offer a late receiver still answers, in seconds
    signal_replay_window: float = 60.0

    # Call session
    error_close_delay: float = 2.0
    duration_tick_interval: float = 1.0

    # Media capture: "devices" (FFmpeg inputs below) or "synthetic"
    media_backend: str = "devices"
    audio_capture_format: Optional[str] = "pulse"
    audio_capture_device: str = "default"
    video_capture_format: Optional[str] = "v4l2"
    video_capture_device: str = "/dev/video0"
    screen_capture_format: Optional[str] = "x11grab"
    screen_capture_device: str = ":0.0"
    capture_video_size: str = "640x480"
    capture_framerate: str = "30"

    # Remote media sink (empty = discard remote media)
    recording_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
