"""Clashub: single-user console for Clash subscriptions, config snippets and fetchers."""

__version__ = "1.0.0"
