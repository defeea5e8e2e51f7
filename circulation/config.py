import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class CirculationPolicy:
    """Limits applied by the loan manager and the reservation queue."""

    max_active_loans: int = 3
    loan_period_days: int = 14
    max_pending_reservations: int = 3


@dataclass
class Settings:
    # Database
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./data/library.db")
    )
    database_echo: bool = field(default_factory=lambda: _env_bool("DATABASE_ECHO"))

    # Circulation policy
    max_active_loans: int = field(default_factory=lambda: int(os.getenv("MAX_ACTIVE_LOANS", "3")))
    loan_period_days: int = field(default_factory=lambda: int(os.getenv("LOAN_PERIOD_DAYS", "14")))
    max_pending_reservations: int = field(
        default_factory=lambda: int(os.getenv("MAX_PENDING_RESERVATIONS", "3"))
    )

    # Worker
    sweep_interval_seconds: int = field(
        default_factory=lambda: int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def policy(self) -> CirculationPolicy:
        return CirculationPolicy(
            max_active_loans=self.max_active_loans,
            loan_period_days=self.loan_period_days,
            max_pending_reservations=self.max_pending_reservations,
        )


settings = Settings()
