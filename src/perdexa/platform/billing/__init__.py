"""Subscriptions, invoices and plan limits."""
