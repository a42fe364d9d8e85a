import os
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv


if os.environ.get("WALLET_ENV") != "production":
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class Settings:
    """Runtime settings for the wallet service. Defaults suit local development."""

    def __init__(
        self,
        env: str = "development",
        squad_base_url: str = "https://sandbox-api-d.squadco.com",
        squad_secret_key: Optional[str] = None,
        webhook_secret: str = "",
        gateway_timeout_seconds: int = 10,
        withdrawal_min_amount: Decimal = Decimal("100"),
        withdrawal_max_amount: Decimal = Decimal("5000000"),
        withdrawal_expiry_seconds: int = 86400,
        sweep_interval_seconds: int = 180,
        submit_retry_seconds: int = 120,
        poll_seconds: int = 300,
        balance_cache_ttl_seconds: int = 30,
        log_dir: str = "logs",
        log_level: str = "INFO",
    ):
        self.env = env
        self.squad_base_url = squad_base_url.rstrip("/")
        self.squad_secret_key = squad_secret_key
        self.webhook_secret = webhook_secret
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.withdrawal_min_amount = Decimal(withdrawal_min_amount)
        self.withdrawal_max_amount = Decimal(withdrawal_max_amount)
        self.withdrawal_expiry_seconds = withdrawal_expiry_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.submit_retry_seconds = submit_retry_seconds
        self.poll_seconds = poll_seconds
        self.balance_cache_ttl_seconds = balance_cache_ttl_seconds
        self.log_dir = log_dir
        self.log_level = log_level

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.getenv("WALLET_ENV", "development")
        secret = os.getenv("SQUAD_SECRET_KEY")
        if not secret and env == "production":
            raise ValueError("SQUAD_SECRET_KEY must be set in production")

        return cls(
            env=env,
            squad_base_url=os.getenv("SQUAD_BASE_URL", "https://sandbox-api-d.squadco.com"),
            squad_secret_key=secret,
            webhook_secret=os.getenv("PAYSTACK_SECRET_KEY", ""),
            gateway_timeout_seconds=_env_int("GATEWAY_TIMEOUT_SECONDS", 10),
            withdrawal_min_amount=Decimal(os.getenv("WITHDRAWAL_MIN_AMOUNT", "100")),
            withdrawal_max_amount=Decimal(os.getenv("WITHDRAWAL_MAX_AMOUNT", "5000000")),
            withdrawal_expiry_seconds=_env_int("WITHDRAWAL_EXPIRY_SECONDS", 86400),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 180),
            submit_retry_seconds=_env_int("SUBMIT_RETRY_SECONDS", 120),
            poll_seconds=_env_int("POLL_SECONDS", 300),
            balance_cache_ttl_seconds=_env_int("BALANCE_CACHE_TTL_SECONDS", 30),
            log_dir=os.getenv("LOG_DIR", "logs"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
