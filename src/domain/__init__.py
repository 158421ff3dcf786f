"""Domain models and rules for the gear custody ledger.

This package contains in-memory (Pydantic) models describing assets, holders
and custody transitions, the pure transition policy, and the error taxonomy.
They are independent from persistence models so that custody rules and
testing can evolve without DB coupling.
"""

__all__ = [
    "custody",
    "errors",
    "policy",
]
