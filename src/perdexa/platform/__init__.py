"""Perdexa platform: accounts, tenancy, subscriptions and billing."""

__version__ = "1.0.0"
