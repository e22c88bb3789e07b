# app/core/config.py
import os
from decimal import Decimal, InvalidOperation
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


def parse_cost_overrides(value: str | None) -> dict[str, Decimal]:
    """Parse "provider=cost,provider=cost" into a mapping. Malformed entries raise."""
    overrides: dict[str, Decimal] = {}
    for item in parse_csv(value):
        provider, sep, raw_cost = item.partition("=")
        provider = provider.strip().lower()
        if not sep or not provider:
            raise RuntimeError(f"Invalid PROVIDER_COSTS entry: {item!r}")
        try:
            cost = Decimal(raw_cost.strip())
        except InvalidOperation as exc:
            raise RuntimeError(f"Invalid cost for provider {provider!r}: {raw_cost!r}") from exc
        if not cost.is_finite() or cost < 0:
            raise RuntimeError(f"Invalid cost for provider {provider!r}: {raw_cost!r}")
        overrides[provider] = cost
    return overrides


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In deployed environments env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | test | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

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
        # Auth / JWT
        # ----------------------------
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

        # ----------------------------
        # Stripe
        # ----------------------------
        self.STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
        self.STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.STRIPE_DEFAULT_CURRENCY = os.getenv("STRIPE_DEFAULT_CURRENCY", "usd").strip().lower() or "usd"

        # ----------------------------
        # Credits / metering
        # ----------------------------
        self.PROVIDER_COSTS = parse_cost_overrides(os.getenv("PROVIDER_COSTS"))
        self.PROVIDER_DEFAULT_COST = Decimal(os.getenv("PROVIDER_DEFAULT_COST", "1.0"))
        self.LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))
        # Free generations before paid credits are needed; 0 disables the allotment.
        self.DEMO_CREDITS_LIMIT = max(0, int(os.getenv("DEMO_CREDITS_LIMIT", "5")))

        # ----------------------------
        # AI providers
        # ----------------------------
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
        self.ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
        self.ANTHROPIC_API_URL = os.getenv("ANTHROPIC_API_URL", "https://api.anthropic.com/v1").rstrip("/")
        self.AI_MAX_RETRIES = int(os.getenv("AI_MAX_RETRIES", "3"))
        self.AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))
        self.AI_MAX_TOKENS = int(os.getenv("AI_MAX_TOKENS", "4000"))
        self.AI_TEMPERATURE = float(os.getenv("AI_TEMPERATURE", "0.7"))

        # Fernet key for users' private provider keys at rest.
        self.API_TOKEN_ENCRYPTION_KEY = os.getenv("API_TOKEN_ENCRYPTION_KEY", "")

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.JWT_SECRET:
            missing.append("JWT_SECRET")
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

        if not self.STRIPE_SECRET_KEY:
            missing.append("STRIPE_SECRET_KEY")
        if not self.STRIPE_WEBHOOK_SECRET:
            missing.append("STRIPE_WEBHOOK_SECRET")
        if not self.API_TOKEN_ENCRYPTION_KEY:
            missing.append("API_TOKEN_ENCRYPTION_KEY")

        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

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
            # Local fallback so the app and tooling import without a Postgres instance.
            return "sqlite+pysqlite:///./thinktest.db"
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()


def require_jwt_secret() -> None:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")
