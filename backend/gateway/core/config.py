# gateway/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def parse_plan_credits(value: str | None) -> dict[str, int]:
    """
    Parse "FREE:2000,LAUNCH_4000_FIXED:4000" into {"FREE": 2000, ...}.
    Malformed pairs are a configuration error.
    """
    plans: dict[str, int] = {}
    for item in parse_csv(value):
        code, sep, credits = item.partition(":")
        code = code.strip().upper()
        if not sep or not code:
            raise RuntimeError(f"PLAN_CREDITS entry is malformed: {item!r}")
        try:
            plans[code] = int(credits.strip())
        except ValueError as exc:
            raise RuntimeError(f"PLAN_CREDITS entry has a non-integer allotment: {item!r}") from exc
    return plans


DEFAULT_PLAN_CREDITS = {
    "FREE": 2000,
    "LAUNCH_4000_FIXED": 4000,
    "PLAN_A": 12360,
    "PLAN_B": 24720,
}


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        # DATABASE_URL wins when set (local sqlite, tests); otherwise build a Postgres URL.
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

        # Ledger transactions are short; anything slower is surfaced as retryable.
        self.LEDGER_TX_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TX_TIMEOUT_SECONDS", "5"))

        # ----------------------------
        # CORS
        # ----------------------------
        dev_defaults = [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV == "prod":
            self.CORS_ORIGINS = merge_unique(cors_from_env)
        else:
            self.CORS_ORIGINS = merge_unique(cors_from_env + dev_defaults)

        # ----------------------------
        # Providers
        # ----------------------------
        self.FAL_KEY = os.getenv("FAL_KEY", "")
        self.FAL_QUEUE_BASE_URL = os.getenv("FAL_QUEUE_BASE_URL", "https://queue.fal.run").rstrip("/")
        self.REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
        self.REPLICATE_BASE_URL = os.getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1").rstrip("/")
        self.RUNWAY_API_KEY = os.getenv("RUNWAY_API_KEY", "")
        self.RUNWAY_BASE_URL = os.getenv("RUNWAY_BASE_URL", "https://api.dev.runwayml.com/v1").rstrip("/")
        self.RUNWAY_API_VERSION = os.getenv("RUNWAY_API_VERSION", "2024-11-06")
        self.PROVIDER_HTTP_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_HTTP_TIMEOUT_SECONDS", "30"))

        # ----------------------------
        # Artifact storage (S3-compatible)
        # ----------------------------
        self.AWS_REGION = os.getenv("AWS_REGION", "")
        self.S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME", "")
        self.S3_PREFIX = os.getenv("S3_PREFIX", "generations")
        self.S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "") or None
        self.STORAGE_PUBLIC_BASE_URL = os.getenv("STORAGE_PUBLIC_BASE_URL", "").strip().rstrip("/")
        self.ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS", "120"))

        # ----------------------------
        # Background tasks
        # ----------------------------
        self.TASK_BROKER_URL = os.getenv("TASK_BROKER_URL", "")
        self.SWEEP_STALE_AFTER_SECONDS = int(os.getenv("SWEEP_STALE_AFTER_SECONDS", "300"))
        self.SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "50"))

        # ----------------------------
        # Plans
        # ----------------------------
        self.DEFAULT_PLAN_CODE = os.getenv("DEFAULT_PLAN_CODE", "FREE").strip().upper() or "FREE"
        self.PLAN_CREDITS = dict(DEFAULT_PLAN_CREDITS)
        self.PLAN_CREDITS.update(parse_plan_credits(os.getenv("PLAN_CREDITS")))

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")
        elif self.DATABASE_URL.startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must not point at sqlite in prod")

        if not self.S3_BUCKET_NAME:
            missing.append("S3_BUCKET_NAME")
        if not self.TASK_BROKER_URL:
            missing.append("TASK_BROKER_URL")

        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")
        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        if self.DEFAULT_PLAN_CODE not in self.PLAN_CREDITS:
            raise RuntimeError(f"DEFAULT_PLAN_CODE {self.DEFAULT_PLAN_CODE} has no PLAN_CREDITS entry")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if not self.DB_HOST:
            # Local development without Postgres.
            return "sqlite+pysqlite:///./gateway.db"
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL or not self.DB_HOST:
            return self.database_url
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()
