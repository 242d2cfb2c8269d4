"""
Option pricing and Greeks using the Black-Scholes-Merton model.

Pure Python implementation. The normal CDF is built on a polynomial
approximation of erf so results are reproducible across platforms.
"""

import logging
import math
from dataclasses import dataclass

from ..core.config import settings
from ..models.options import Greeks, OptionKind, PricingParams

logger = logging.getLogger(__name__)

SQRT_2 = math.sqrt(2.0)
SQRT_2_PI = math.sqrt(2.0 * math.pi)
EPSILON = 1e-10

# Abramowitz & Stegun 7.1.26, |error| <= 1.5e-7
_ERF_P = 0.3275911
_ERF_A = (0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429)


def erf(x: float) -> float:
    """Error function approximation."""
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)

    a1, a2, a3, a4, a5 = _ERF_A
    t = 1.0 / (1.0 + _ERF_P * x)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)

    return sign * y


def norm_cdf(x: float) -> float:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + erf(x / SQRT_2))


def norm_pdf(x: float) -> float:
    """Standard normal probability density function."""
    return math.exp(-0.5 * x * x) / SQRT_2_PI


def intrinsic_value(underlying_price: float, strike: float, kind: OptionKind) -> float:
    if kind == OptionKind.CALL:
        return max(0.0, underlying_price - strike)
    return max(0.0, strike - underlying_price)


def _d1(S: float, K: float, T: float, r: float, q: float, sigma: float) -> float:
    """Calculate d1 parameter for Black-Scholes."""
    return (math.log(S / K) + (r - q + 0.5 * sigma * sigma) * T) / (
        sigma * math.sqrt(T)
    )


def _unpack(params: PricingParams) -> tuple[float, float, float, float, float, float]:
    return (
        params.underlying_price,
        params.strike,
        params.time_to_expiration,
        params.risk_free_rate,
        params.dividend_yield,
        params.volatility,
    )


def price(params: PricingParams) -> float:
    """
    Theoretical option price.

    Expired options (time to expiration <= 0) are worth their intrinsic value.
    """
    S, K, T, r, q, sigma = _unpack(params)

    if T <= 0:
        return intrinsic_value(S, K, params.kind)

    d1 = _d1(S, K, T, r, q, sigma)
    d2 = d1 - sigma * math.sqrt(T)

    if params.kind == OptionKind.CALL:
        return S * math.exp(-q * T) * norm_cdf(d1) - K * math.exp(-r * T) * norm_cdf(d2)

    return K * math.exp(-r * T) * norm_cdf(-d2) - S * math.exp(-q * T) * norm_cdf(-d1)


def greeks(params: PricingParams) -> Greeks:
    """
    Calculate option Greeks.

    Theta is per calendar day, vega and rho per one percentage point move.
    """
    S, K, T, r, q, sigma = _unpack(params)
    is_call = params.kind == OptionKind.CALL

    if T <= 0:
        return Greeks(delta=1.0 if is_call else -1.0, implied_volatility=sigma)

    d1 = _d1(S, K, T, r, q, sigma)
    d2 = d1 - sigma * math.sqrt(T)

    sqrt_T = math.sqrt(T)
    discount = math.exp(-r * T)
    dividend_discount = math.exp(-q * T)
    pdf_d1 = norm_pdf(d1)

    # First-order Greeks
    if is_call:
        delta = dividend_discount * norm_cdf(d1)
    else:
        delta = -dividend_discount * norm_cdf(-d1)

    # Gamma (same for calls and puts)
    gamma = (dividend_discount * pdf_d1) / (S * sigma * sqrt_T)

    # Theta
    theta_decay = -S * dividend_discount * pdf_d1 * sigma / (2 * sqrt_T)
    if is_call:
        theta = (
            theta_decay
            - r * K * discount * norm_cdf(d2)
            + q * S * dividend_discount * norm_cdf(d1)
        )
    else:
        theta = (
            theta_decay
            + r * K * discount * norm_cdf(-d2)
            - q * S * dividend_discount * norm_cdf(-d1)
        )

    vega = S * dividend_discount * pdf_d1 * sqrt_T

    if is_call:
        rho = K * T * discount * norm_cdf(d2)
    else:
        rho = -K * T * discount * norm_cdf(-d2)

    return Greeks(
        delta=delta,
        gamma=gamma,
        theta=theta / settings.DAYS_PER_YEAR,
        vega=vega / 100,
        rho=rho / 100,
        implied_volatility=sigma,
    )


@dataclass
class ImpliedVolatilityResult:
    """Outcome of an implied volatility solve."""

    volatility: float
    iterations: int
    residual: float
    converged: bool


def solve_implied_volatility(
    market_price: float,
    params: PricingParams,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> ImpliedVolatilityResult:
    """
    Newton-Raphson implied volatility solve.

    The volatility on ``params`` is ignored; the search always starts from
    the configured initial guess. Never raises on non-convergence: the last
    estimate is returned with ``converged=False``.
    """
    sigma = settings.IV_INITIAL_GUESS
    residual = math.inf

    for iteration in range(1, max_iterations + 1):
        trial = params.with_volatility(sigma)
        residual = price(trial) - market_price

        if abs(residual) < tolerance:
            return ImpliedVolatilityResult(sigma, iteration, residual, True)

        # Vega per unit volatility
        vega = greeks(trial).vega * 100
        if abs(vega) < EPSILON:
            logger.debug(f"Vega too flat at sigma={sigma:.6f}, stopping IV search")
            return ImpliedVolatilityResult(sigma, iteration, residual, False)

        sigma -= residual / vega

        if sigma <= 0:
            sigma = settings.IV_MIN_VOLATILITY
        elif sigma > settings.IV_MAX_VOLATILITY:
            sigma = settings.IV_MAX_VOLATILITY

    logger.debug(
        f"IV search exhausted {max_iterations} iterations, residual={residual:.3e}"
    )
    return ImpliedVolatilityResult(sigma, max_iterations, residual, False)


def implied_volatility(
    market_price: float,
    params: PricingParams,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> float:
    """Best-effort implied volatility; see solve_implied_volatility."""
    return solve_implied_volatility(
        market_price, params, max_iterations, tolerance
    ).volatility
