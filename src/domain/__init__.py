"""Domain models and pure calculations for portfolio valuation.

This package holds the rate snapshot, the cross-currency resolver and the
valuation engine. Nothing here performs I/O, so business logic can be tested
without providers or a database.
"""

__all__ = [
    "base_types",
    "pricing",
    "rate_resolver",
    "rates",
    "summary",
    "valuation",
]
