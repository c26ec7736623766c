"""Resume SaaS backend: credit ledger, entitlements and billing sync."""

__version__ = "0.3.0"
