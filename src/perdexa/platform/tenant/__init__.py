"""Tenants, memberships and tenant resolution."""
