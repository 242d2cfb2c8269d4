"""
Option pricing and strategy models.

Pricing parameters, Greeks, contracts, chains and multi-leg strategies.
All models are frozen: a refresh builds new snapshots, nothing is mutated
in place.
"""

import math
from datetime import UTC, date, datetime
from enum import Enum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from ..core.config import settings
from ..core.exceptions import PricingInputError


class OptionKind(str, Enum):
    """Option right."""

    CALL = "call"
    PUT = "put"


class LegAction(str, Enum):
    """Direction of a strategy leg."""

    BUY = "buy"
    SELL = "sell"


class StrategyKind(str, Enum):
    """Supported multi-leg strategy kinds."""

    STRADDLE = "straddle"
    STRANGLE = "strangle"
    BUTTERFLY = "butterfly"
    BULL_CALL_SPREAD = "bull_call_spread"
    BEAR_PUT_SPREAD = "bear_put_spread"
    IRON_CONDOR = "iron_condor"


class PricingParams(BaseModel):
    """Inputs to every closed-form pricing call."""

    model_config = ConfigDict(frozen=True)

    underlying_price: float = Field(..., description="Spot price of the underlying")
    strike: float = Field(..., description="Strike price")
    time_to_expiration: float = Field(
        ..., description="Time to expiration in years (<= 0 means expired)"
    )
    risk_free_rate: float = Field(
        default_factory=lambda: settings.DEFAULT_RISK_FREE_RATE
    )
    dividend_yield: float = Field(
        default_factory=lambda: settings.DEFAULT_DIVIDEND_YIELD
    )
    volatility: float = Field(..., description="Annualized volatility")
    kind: OptionKind

    @field_validator("underlying_price", "strike")
    @classmethod
    def _positive_price(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise PricingInputError(f"Prices must be positive and finite, got {v}")
        return v

    @field_validator("time_to_expiration", "risk_free_rate", "dividend_yield")
    @classmethod
    def _finite(cls, v: float, info: ValidationInfo) -> float:
        if not math.isfinite(v):
            raise PricingInputError(f"{info.field_name} must be finite, got {v}")
        return v

    @field_validator("volatility")
    @classmethod
    def _volatility_floor(cls, v: float) -> float:
        if not math.isfinite(v):
            raise PricingInputError(f"Volatility must be finite, got {v}")
        return max(v, settings.MIN_VOLATILITY)

    def with_volatility(self, volatility: float) -> "PricingParams":
        return PricingParams(**{**self.model_dump(), "volatility": volatility})


class Greeks(BaseModel):
    """Option sensitivities.

    Theta is per calendar day, vega per one volatility point and rho per one
    rate point.
    """

    model_config = ConfigDict(frozen=True)

    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    rho: float = 0.0
    implied_volatility: float = 0.0


class MarketQuote(BaseModel):
    """Quote data supplied by an external market-data collaborator."""

    model_config = ConfigDict(frozen=True)

    bid: float | None = None
    ask: float | None = None
    last: float | None = None
    volume: int | None = None
    open_interest: int | None = None


class OptionContract(BaseModel):
    """Priced option contract snapshot."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="OCC style symbol, e.g. AAPL240119C00195000")
    underlying_symbol: str
    kind: OptionKind
    strike: float
    expiration: date
    days_to_expiration: int
    last_price: float
    bid: float | None = None
    ask: float | None = None
    volume: int | None = Field(default=None, description="Supplied externally")
    open_interest: int | None = Field(default=None, description="Supplied externally")
    synthetic_quote: bool = Field(
        default=True, description="Bid/ask derived from the model price"
    )
    greeks: Greeks
    intrinsic_value: float
    time_value: float
    in_the_money: bool
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def build_symbol(
        underlying: str, kind: OptionKind, strike: float, expiration: date
    ) -> str:
        """Build an option symbol: [UNDERLYING][YYMMDD][C/P][STRIKE*1000]."""
        option_char = "C" if kind == OptionKind.CALL else "P"
        strike_str = f"{int(round(strike * 1000)):08d}"
        return f"{underlying.upper()}{expiration.strftime('%y%m%d')}{option_char}{strike_str}"

    @property
    def key(self) -> tuple[date, float]:
        return (self.expiration, self.strike)

    @property
    def mid_price(self) -> float | None:
        if self.bid is None or self.ask is None:
            return None
        return (self.bid + self.ask) / 2


class OptionChain(BaseModel):
    """Calls and puts for one underlying, ordered by (expiration, strike)."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    underlying_price: float
    expirations: list[date]
    strikes: list[float]
    calls: list[OptionContract]
    puts: list[OptionContract]
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _unique_keys(self) -> "OptionChain":
        for side, contracts in (("calls", self.calls), ("puts", self.puts)):
            keys = [c.key for c in contracts]
            if len(keys) != len(set(keys)):
                raise ValueError(f"Duplicate strike/expiration pair in {side}")
        return self

    def get_contract(
        self, kind: OptionKind, expiration: date, strike: float
    ) -> OptionContract | None:
        contracts = self.calls if kind == OptionKind.CALL else self.puts
        for contract in contracts:
            if contract.expiration == expiration and contract.strike == strike:
                return contract
        return None


class StrategyLeg(BaseModel):
    """One leg of a multi-leg strategy."""

    model_config = ConfigDict(frozen=True)

    id: str
    contract: OptionContract
    action: LegAction
    quantity: int = Field(default=1, gt=0)
    ratio: int = Field(default=1, gt=0)

    @property
    def sign(self) -> int:
        return 1 if self.action == LegAction.BUY else -1


class OptionStrategy(BaseModel):
    """A built strategy. Rebuild to change it."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    kind: StrategyKind
    description: str
    underlying_symbol: str
    legs: tuple[StrategyLeg, ...]
    net_debit: float = Field(..., description="Premium paid (negative = credit)")
    max_profit: float = Field(..., description="math.inf when unbounded")
    max_loss: float
    break_even_points: list[float]
    greeks: Greeks
    probability_of_profit: float
    risk_reward_ratio: float
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def unlimited_profit(self) -> bool:
        return math.isinf(self.max_profit)
