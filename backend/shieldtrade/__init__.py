"""Shielded DCA trading engine for Solana tokens."""

__version__ = "0.1.0"
