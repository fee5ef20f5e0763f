import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    """Application configuration from environment variables."""

    # Database
    database_url: str = os.getenv(
        "DATABASE_URL", "sqlite+aiosqlite:///./data/taskquest.db"
    )

    # Timezone (used by the scheduler)
    timezone: str = os.getenv("TIMEZONE", "UTC")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir: str = os.getenv("LOG_DIR", "logs")

    # Blackjack betting limits
    blackjack_min_bet: int = int(os.getenv("BLACKJACK_MIN_BET", "10"))
    # Max bet as a share of the current balance, capped by blackjack_hard_cap
    blackjack_max_bet_percent: float = float(
        os.getenv("BLACKJACK_MAX_BET_PERCENT", "0.25")
    )
    blackjack_hard_cap: int = int(os.getenv("BLACKJACK_HARD_CAP", "1000"))

    # Game sessions
    game_session_timeout_minutes: int = int(
        os.getenv("GAME_SESSION_TIMEOUT_MINUTES", "30")
    )
    game_session_sweep_minutes: int = int(
        os.getenv("GAME_SESSION_SWEEP_MINUTES", "15")
    )


settings = Settings()
