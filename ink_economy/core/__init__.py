"""
Core modules for the INK economy.

This package contains the tier catalog, generation and action pricing,
the ledger engine, affordability checks and the session store.
"""
