"""Integridad de la moneda CHY: ledger idempotente, rate limiting y sesiones de juego."""

__version__ = "0.1.0"
