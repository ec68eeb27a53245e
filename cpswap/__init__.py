"""Constant-product AMM with reserve-priced discount-token fee settlement."""

__version__ = "0.1.0"
