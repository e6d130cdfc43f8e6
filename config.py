import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_hours: int,
        bcrypt_rounds: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.bcrypt_rounds = bcrypt_rounds
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    session_secret = os.getenv(
        "EXPENSES_SESSION_SECRET",
        "5d0f7c2a9e61b48f3c7a1e0d92b6f4a8c3e5d7b9a1f2e4c6d8b0a2c4e6f8a0b2",
    )
    session_max_age_hours = int(os.getenv("EXPENSES_SESSION_MAX_AGE_HOURS", "720"))
    bcrypt_rounds = int(os.getenv("EXPENSES_BCRYPT_ROUNDS", "12"))
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        bcrypt_rounds=bcrypt_rounds,
        log_level=log_level,
    )
