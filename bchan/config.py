import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> tuple:
    return tuple(item.strip() for item in os.getenv(name, default).split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "postgresql+asyncpg://localhost/bchan"
    db_echo: bool = False
    create_tables: bool = False

    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_region: str = "ru-1"
    s3_public_url: Optional[str] = None
    images_bucket: str = "board-images"
    thumbnails_bucket: str = "board-thumbnails"

    redis_url: str = "redis://localhost:6379/0"

    tripcode_salt: str = "defaultsalt"

    max_file_size: int = 5 * 1024 * 1024  # 5MB
    allowed_file_types: tuple = ("image/jpeg", "image/png", "image/gif", "image/webp")
    thumbnail_width: int = 200

    rate_limit_window_ms: int = 60000  # 1 minute
    rate_limit_max_requests: int = 10
    trust_proxy: bool = False

    cleanup_interval_hours: float = 0

    cors_origins: tuple = ("*",)
    board_name: str = "/b/"
    debug: bool = False
    log_file: Optional[str] = "logs/app.log"

    stats_cache_ttl: int = 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            db_echo=_env_bool("DB_ECHO"),
            create_tables=_env_bool("CREATE_TABLES"),
            aws_access_key=os.getenv("AWS_ACCESS_KEY"),
            aws_secret_key=os.getenv("AWS_SECRET_KEY"),
            s3_endpoint=os.getenv("S3_ENDPOINT"),
            s3_region=os.getenv("S3_REGION", cls.s3_region),
            s3_public_url=os.getenv("S3_PUBLIC_URL"),
            images_bucket=os.getenv("IMAGES_BUCKET", cls.images_bucket),
            thumbnails_bucket=os.getenv("THUMBNAILS_BUCKET", cls.thumbnails_bucket),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            tripcode_salt=os.getenv("TRIPCODE_SALT", cls.tripcode_salt),
            max_file_size=int(os.getenv("MAX_FILE_SIZE", str(cls.max_file_size))),
            allowed_file_types=_env_list("ALLOWED_FILE_TYPES", ",".join(cls.allowed_file_types)),
            thumbnail_width=int(os.getenv("THUMBNAIL_WIDTH", str(cls.thumbnail_width))),
            rate_limit_window_ms=int(os.getenv("RATE_LIMIT_WINDOW_MS", str(cls.rate_limit_window_ms))),
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", str(cls.rate_limit_max_requests))),
            trust_proxy=_env_bool("TRUST_PROXY"),
            cleanup_interval_hours=float(os.getenv("CLEANUP_INTERVAL_HOURS", "0")),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            board_name=os.getenv("BOARD_NAME", cls.board_name),
            debug=_env_bool("DEBUG"),
            log_file=os.getenv("LOG_FILE", cls.log_file) or None,
        )
