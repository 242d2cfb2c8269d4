"""
Quantitative risk and analytics engine for the paper trading platform.

Option pricing and strategy building, portfolio analytics, and the
stop-loss/take-profit and risk-rule engine.
"""

__version__ = "0.1.0"
