"""DealDesk: lifecycle engine for marketplace offers and swaps."""

__version__ = "0.1.0"
