"""
Core modules for Auth Billing.

This package contains caching, query memoization, event aggregation,
pricing, and statement building.
"""
