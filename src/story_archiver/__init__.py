"""Offline archiver for remotely hosted interactive stories."""

__version__ = "0.3.0"
