"""Spaza Escrow — a neutral escrow lifecycle engine for buyers and sellers."""

__version__ = "0.1.0"
