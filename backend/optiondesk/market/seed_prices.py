"""Seed levels and parameters for the simulated broker."""

# Starting levels for the simulated underlyings (previous close)
SEED_PRICES: dict[str, float] = {
    "NIFTY": 24944.00,
    "BANKNIFTY": 55120.00,
    "FINNIFTY": 26310.00,
}

# Exchange token of the index spot, as the broker lists it
SPOT_TOKENS: dict[str, str] = {
    "NIFTY": "26000",
    "BANKNIFTY": "26009",
    "FINNIFTY": "26037",
}

LOT_SIZES: dict[str, int] = {
    "NIFTY": 75,
    "BANKNIFTY": 35,
    "FINNIFTY": 65,
}

# Per-underlying GBM parameters
# sigma: annualized volatility (also drives simulated option premiums)
# mu: annualized drift
INDEX_PARAMS: dict[str, dict[str, float]] = {
    "NIFTY": {"sigma": 0.13, "mu": 0.08},
    "BANKNIFTY": {"sigma": 0.16, "mu": 0.09},
    "FINNIFTY": {"sigma": 0.15, "mu": 0.08},
}

# Default parameters for an underlying not in the list above
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.15, "mu": 0.08}

# Spot and its front-month future move almost in lockstep
SPOT_FUTURE_CORR = 0.98

# Annualized cost of carry applied to the future's starting level
CARRY_RATE = 0.065

# Contract tick size in paise, as published in the scrip master
OPTION_TICK_PAISE = 5.0
FUTURE_TICK_PAISE = 10.0

# First synthetic token numbers for generated contracts
OPTION_TOKEN_BASE = 35000
FUTURE_TOKEN_BASE = 52000
