import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )

    PROJECT_NAME: str = "Quant Risk Engine"

    # Environment
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR: str | None = None

    # Option pricing
    DEFAULT_RISK_FREE_RATE: float = 0.02
    DEFAULT_DIVIDEND_YIELD: float = 0.01
    DAYS_PER_YEAR: int = 365
    MIN_VOLATILITY: float = 1e-4
    IV_INITIAL_GUESS: float = 0.30
    IV_MIN_VOLATILITY: float = 0.01
    IV_MAX_VOLATILITY: float = 5.0
    SYNTHETIC_SPREAD: float = 0.02

    # Portfolio analytics
    TRADING_DAYS_PER_YEAR: int = 252
    ANALYTICS_RISK_FREE_RATE: float = 0.02
    VAR_CONFIDENCE: float = 0.95
    DEFAULT_POSITION_VOLATILITY: float = 0.20
    LIQUIDITY_POSITION_THRESHOLD: float = 0.05

    # Risk engine (percent values)
    DEFAULT_RISK_PERCENT: float = 10.0
    DEFAULT_REWARD_PERCENT: float = 20.0
    RISK_BUDGET_PERCENT: float = 15.0
    VAR99_SCALING: float = 1.5
    MAX_POSITION_CONCENTRATION: float = 20.0
    MAX_SECTOR_CONCENTRATION: float = 30.0
    LARGE_POSITION_VALUE: float = 100000.0
    IGNORE_STALE_TICKS: bool = True


settings = Settings()
