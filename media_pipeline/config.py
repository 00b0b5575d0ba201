from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MEDIA_PIPELINE_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "media-pipeline"
    host: str = "0.0.0.0"
    port: int = 8100

    # Local working areas
    temp_root: str = "/tmp/projects"
    media_roots: list[str] = Field(default_factory=lambda: ["/tmp/projects"])

    # In-memory content caches
    video_cache_max_mb: int = 500
    video_cache_max_entry_mb: int = 100
    video_cache_ttl_minutes: float = 10
    image_cache_max_mb: int = 100
    image_cache_max_entry_mb: int = 20
    image_cache_ttl_minutes: float = 15

    # Temp file lifecycle
    cleanup_max_age_hours: float = 24
    cleanup_threshold_gb: float = 5
    cleanup_budget_seconds: float = 300
    cleanup_interval_seconds: float = 0
    cleanup_preserve_categories: list[str] = Field(
        default_factory=lambda: ["timeline-edits", "final", "frames"]
    )
    cron_secret: str = ""

    # Generation provider
    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com/v1"
    provider_timeout_seconds: float = 30.0
    image_model: str = "black-forest-labs/flux-1.1-pro"
    video_model: str = "kwaivgi/kling-v2.1"
    music_model: str = "meta/musicgen"
    narration_model: str = "jaaari/kokoro-82m"
    background_removal_model: str = (
        "cjwbw/rembg:fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003"
    )
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 60
    max_retries: int = 3
    download_retries: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    asset_download_timeout: float = 60.0

    # Object storage configuration
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_bucket: str = "generated-media"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str | None = None
    storage_folder_prefix: str = "projects"
    presign_ttl_seconds: int = 3600

    # Job state events
    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_updates_topic: str = "generation_updates"

    # Rendering
    ffmpeg_binary: str = "ffmpeg"
    preview_width: int = 1280
    preview_height: int = 720
    final_width: int = 1920
    final_height: int = 1080
    fps: int = 30
    encoding_profile: str = "libx264-ultrafast-crf23-aac128k"
    font_directory: str = "/usr/share/fonts/truetype"
    lut_directory: str = "assets/luts"
    style_luts: dict[str, str] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
