"""CoinTrail: personal income and expense tracking over Supabase."""

__version__ = "1.0.0"
