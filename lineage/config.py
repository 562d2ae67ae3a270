import os
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # -------------------------------------------------------
    # Project
    # -------------------------------------------------------
    PROJECT_NAME: str = "Lineage Tree Engine"
    ENV: str = os.getenv("ENV", "dev")

    # -------------------------------------------------------
    # Database
    # -------------------------------------------------------
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./lineage.db"
    )

    # Hosted Postgres URLs use postgres:// but SQLAlchemy needs postgresql://
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

    # -------------------------------------------------------
    # Actor tokens (issued by the external identity provider)
    # -------------------------------------------------------
    SECRET_KEY: str = os.getenv(
        "SECRET_KEY",
        "supersecretlocalkey123"   # Only used for local dev
    )
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
    TOKEN_URL: str = os.getenv("TOKEN_URL", "/auth/token")

    # -------------------------------------------------------
    # CORS
    # -------------------------------------------------------
    CORS_ORIGINS: list = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
    ]

    # -------------------------------------------------------
    # Logging
    # -------------------------------------------------------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "console")   # console | json

    # -------------------------------------------------------
    # Tree policy
    # -------------------------------------------------------
    # One live root for the whole forest. Turn off during a migration window.
    SINGLE_ROOT: bool = _env_bool("SINGLE_ROOT", True)

    BRANCH_MAX_DEPTH: int = int(os.getenv("BRANCH_MAX_DEPTH", 10))
    BRANCH_MAX_LIMIT: int = int(os.getenv("BRANCH_MAX_LIMIT", 500))

    # Largest subtree a single cascade delete may tombstone
    CASCADE_MAX_DESCENDANTS: int = int(os.getenv("CASCADE_MAX_DESCENDANTS", 100))

    # -------------------------------------------------------
    # Search
    # -------------------------------------------------------
    SEARCH_MAX_LIMIT: int = int(os.getenv("SEARCH_MAX_LIMIT", 500))
    SEARCH_MAX_CHAIN_DEPTH: int = int(os.getenv("SEARCH_MAX_CHAIN_DEPTH", 20))
    SEARCH_DISPLAY_CHAIN_LENGTH: int = int(os.getenv("SEARCH_DISPLAY_CHAIN_LENGTH", 5))

    # -------------------------------------------------------
    # Undo
    # -------------------------------------------------------
    # Non-admins can only undo entries younger than this
    UNDO_WINDOW_DAYS: int = int(os.getenv("UNDO_WINDOW_DAYS", 30))


# Single instance that is imported everywhere
settings = Settings()
