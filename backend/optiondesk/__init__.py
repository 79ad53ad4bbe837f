"""OptionDesk: live NIFTY options-chain viewer backend."""

__version__ = "0.1.0"
