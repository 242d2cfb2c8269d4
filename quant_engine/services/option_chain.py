"""
Option chain construction on top of the pricing core.

Contracts are priced at a single uniform volatility (no skew). When no
market quote is supplied for a contract the bid/ask is a fixed synthetic
spread around the model price and volume/open interest stay empty.
"""

import logging
import math
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime

from ..core.config import settings
from ..models.options import (
    MarketQuote,
    OptionChain,
    OptionContract,
    OptionKind,
    PricingParams,
)
from . import greeks as pricing

logger = logging.getLogger(__name__)


def days_to_expiration(expiration: date, as_of: datetime | None = None) -> int:
    """Whole calendar days until expiration, rounded up."""
    now = as_of or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    expiry = datetime(expiration.year, expiration.month, expiration.day, tzinfo=UTC)
    return math.ceil((expiry - now).total_seconds() / 86400)


def create_option_contract(
    underlying_symbol: str,
    kind: OptionKind,
    strike: float,
    expiration: date,
    underlying_price: float,
    volatility: float,
    risk_free_rate: float | None = None,
    dividend_yield: float | None = None,
    quote: MarketQuote | None = None,
    as_of: datetime | None = None,
) -> OptionContract:
    """Price a single contract and wrap it as an immutable snapshot."""
    days = days_to_expiration(expiration, as_of)
    params = PricingParams(
        underlying_price=underlying_price,
        strike=strike,
        time_to_expiration=days / settings.DAYS_PER_YEAR,
        risk_free_rate=(
            settings.DEFAULT_RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        ),
        dividend_yield=(
            settings.DEFAULT_DIVIDEND_YIELD if dividend_yield is None else dividend_yield
        ),
        volatility=volatility,
        kind=kind,
    )

    model_price = pricing.price(params)
    contract_greeks = pricing.greeks(params)
    intrinsic = pricing.intrinsic_value(underlying_price, strike, kind)

    if quote is not None and quote.bid is not None and quote.ask is not None:
        bid, ask, synthetic = quote.bid, quote.ask, False
    else:
        bid = model_price * (1 - settings.SYNTHETIC_SPREAD)
        ask = model_price * (1 + settings.SYNTHETIC_SPREAD)
        synthetic = True

    last_price = quote.last if quote is not None and quote.last is not None else model_price

    if kind == OptionKind.CALL:
        in_the_money = underlying_price > strike
    else:
        in_the_money = underlying_price < strike

    return OptionContract(
        symbol=OptionContract.build_symbol(underlying_symbol, kind, strike, expiration),
        underlying_symbol=underlying_symbol.upper(),
        kind=kind,
        strike=float(strike),
        expiration=expiration,
        days_to_expiration=days,
        last_price=last_price,
        bid=bid,
        ask=ask,
        volume=quote.volume if quote else None,
        open_interest=quote.open_interest if quote else None,
        synthetic_quote=synthetic,
        greeks=contract_greeks,
        intrinsic_value=intrinsic,
        time_value=model_price - intrinsic,
        in_the_money=in_the_money,
    )


def build_chain(
    symbol: str,
    underlying_price: float,
    expirations: Iterable[date],
    strikes: Iterable[float],
    volatility: float,
    risk_free_rate: float | None = None,
    dividend_yield: float | None = None,
    quotes: Mapping[str, MarketQuote] | None = None,
    as_of: datetime | None = None,
) -> OptionChain:
    """
    Build a call and a put for every (expiration, strike) pair.

    Args:
        symbol: Underlying symbol
        underlying_price: Current underlying price
        expirations: Expiration dates (duplicates are dropped)
        strikes: Strike prices (duplicates are dropped)
        volatility: Uniform volatility used for every contract
        quotes: Optional market quotes keyed by contract symbol

    Returns:
        OptionChain ordered by (expiration, strike)
    """
    unique_expirations = sorted(set(expirations))
    unique_strikes = sorted({float(k) for k in strikes})
    quotes = quotes or {}
    as_of = as_of or datetime.now(UTC)

    calls: list[OptionContract] = []
    puts: list[OptionContract] = []

    for expiration in unique_expirations:
        for strike in unique_strikes:
            for kind, side in ((OptionKind.CALL, calls), (OptionKind.PUT, puts)):
                contract_symbol = OptionContract.build_symbol(
                    symbol, kind, strike, expiration
                )
                side.append(
                    create_option_contract(
                        symbol,
                        kind,
                        strike,
                        expiration,
                        underlying_price,
                        volatility,
                        risk_free_rate,
                        dividend_yield,
                        quote=quotes.get(contract_symbol),
                        as_of=as_of,
                    )
                )

    logger.debug(
        f"Built {symbol} chain: {len(unique_expirations)} expirations x "
        f"{len(unique_strikes)} strikes"
    )

    return OptionChain(
        symbol=symbol.upper(),
        underlying_price=underlying_price,
        expirations=unique_expirations,
        strikes=unique_strikes,
        calls=calls,
        puts=puts,
    )
