from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class MinioConfig(BaseModel):
    endpoint: str = "minio:9000"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    bucket: str = "moments"
    secure: bool = False


class StorageConfig(BaseModel):
    temp_storage_path: str = "./temp_storage"
    # Name of the per-user folder holding daily clips and compilations
    folder_name: str = "365 Moments"


class FFmpegConfig(BaseModel):
    # Empty means "resolve once at startup" (PATH lookup, then bare "ffmpeg")
    binary_path: str = ""
    # Empty means "ffprobe next to ffmpeg, else on PATH, else parse ffmpeg -i"
    ffprobe_path: str = ""
    threads: int = 0
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "fast"
    crf: int = 23
    pixel_format: str = "yuv420p"
    segment_audio_bitrate: str = "128k"
    music_audio_bitrate: str = "192k"
    audio_sample_rate: int = 44100
    width: int = 1920
    height: int = 1080
    fps: int = 30
    segment_seconds: float = 1.0
    normalize_timeout_seconds: int = 120
    concat_timeout_seconds: int = 1800
    ingest_timeout_seconds: int = 120


class CompilationConfig(BaseModel):
    output_prefix: str = "365moments"
    # None = environment dependent (production: 7, otherwise 2)
    min_clips: Optional[int] = None


class JwtConfig(BaseModel):
    # Shared with the frontend that issues the session tokens
    secret: str = ""
    algorithm: str = "HS256"


class AppConfig(BaseModel):
    app_name: str = "365 Moments"
    environment: str = "development"
    debug: bool = True
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
        env_nested_delimiter="__",
    )

    minio: MinioConfig = Field(default_factory=MinioConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    compilation: CompilationConfig = Field(default_factory=CompilationConfig)
    jwt: JwtConfig = Field(default_factory=JwtConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[Any, ...]:
        """
        Support BOTH:
        - Nested env vars (e.g., MINIO__ENDPOINT) via env_nested_delimiter
        - Flat env vars (e.g., MINIO_ENDPOINT) via a legacy mapping source

        Priority: init > env > dotenv > legacy > secrets
        """

        def legacy_flat_env_source() -> Dict[str, Any]:
            env: Dict[str, str] = {}
            try:
                from dotenv import dotenv_values  # local import to avoid hard dependency at import-time

                env_file = cls.model_config.get("env_file", ".env")
                if env_file:
                    file_vals = {k: (v or "") for k, v in dotenv_values(env_file).items()}
                    env.update({k: v for k, v in file_vals.items() if k})
            except Exception:
                # If dotenv parsing fails, fall back to environment only.
                pass

            # Environment variables override .env values
            env.update({k: v for k, v in os.environ.items()})

            def get(var: str, default: str = "") -> str:
                v = env.get(var)
                return default if v is None else v

            def get_bool(var: str) -> Any:
                if env.get(var) is None:
                    return None
                raw = get(var).strip().lower()
                if raw in ("true", "1", "yes", "y", "on"):
                    return True
                if raw in ("false", "0", "no", "n", "off"):
                    return False
                return None

            def get_int(var: str) -> Any:
                if env.get(var) is None:
                    return None
                try:
                    return int(get(var).strip())
                except Exception:
                    return None

            out: Dict[str, Any] = {}

            def set_path(path: Tuple[str, ...], value: Any) -> None:
                d: Dict[str, Any] = out
                for key in path[:-1]:
                    d = d.setdefault(key, {})
                d[path[-1]] = value

            # MinIO
            for var, field in (
                ("MINIO_ENDPOINT", "endpoint"),
                ("MINIO_ACCESS_KEY", "access_key"),
                ("MINIO_SECRET_KEY", "secret_key"),
                ("MINIO_BUCKET", "bucket"),
            ):
                if env.get(var) is not None:
                    set_path(("minio", field), get(var))
            secure = get_bool("MINIO_SECURE")
            if secure is not None:
                set_path(("minio", "secure"), secure)

            # Storage
            if env.get("TEMP_STORAGE_PATH") is not None:
                set_path(("storage", "temp_storage_path"), get("TEMP_STORAGE_PATH"))
            if env.get("DRIVE_FOLDER_NAME") is not None:
                set_path(("storage", "folder_name"), get("DRIVE_FOLDER_NAME"))

            # FFmpeg
            if env.get("FFMPEG_PATH") is not None:
                set_path(("ffmpeg", "binary_path"), get("FFMPEG_PATH"))
            if env.get("FFPROBE_PATH") is not None:
                set_path(("ffmpeg", "ffprobe_path"), get("FFPROBE_PATH"))
            threads = get_int("FFMPEG_THREADS")
            if threads is not None:
                set_path(("ffmpeg", "threads"), threads)
            normalize_timeout = get_int("NORMALIZE_TIMEOUT_SECONDS")
            if normalize_timeout is not None:
                set_path(("ffmpeg", "normalize_timeout_seconds"), normalize_timeout)
            concat_timeout = get_int("CONCAT_TIMEOUT_SECONDS")
            if concat_timeout is not None:
                set_path(("ffmpeg", "concat_timeout_seconds"), concat_timeout)
            ingest_timeout = get_int("INGEST_TIMEOUT_SECONDS")
            if ingest_timeout is not None:
                set_path(("ffmpeg", "ingest_timeout_seconds"), ingest_timeout)

            # Compilation
            min_clips = get_int("MIN_CLIPS")
            if min_clips is not None:
                set_path(("compilation", "min_clips"), min_clips)
            if env.get("OUTPUT_PREFIX") is not None:
                set_path(("compilation", "output_prefix"), get("OUTPUT_PREFIX"))

            # JWT
            secret = env.get("AUTH_SECRET") or env.get("JWT_SECRET")
            if secret:
                set_path(("jwt", "secret"), secret)
            if env.get("ALGORITHM") is not None:
                set_path(("jwt", "algorithm"), get("ALGORITHM"))

            # App
            if env.get("APP_NAME") is not None:
                set_path(("app", "app_name"), get("APP_NAME"))
            environment = env.get("APP_ENV") or env.get("NODE_ENV")
            if environment:
                set_path(("app", "environment"), environment.strip().lower())
            debug = get_bool("DEBUG")
            if debug is not None:
                set_path(("app", "debug"), debug)
            if env.get("CORS_ORIGINS") is not None:
                set_path(("app", "cors_origins"), get("CORS_ORIGINS"))

            return out

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            legacy_flat_env_source,
            file_secret_settings,
        )

    @property
    def temp_dir(self) -> str:
        return self.storage.temp_storage_path

    @property
    def is_production(self) -> bool:
        return self.app.environment == "production"

    @property
    def min_clips(self) -> int:
        """Minimum number of daily clips a compilation needs."""
        if self.compilation.min_clips is not None:
            return self.compilation.min_clips
        return 7 if self.is_production else 2


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
