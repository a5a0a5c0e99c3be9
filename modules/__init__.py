"""Helper modules for the scan station."""

__all__ = [
    "action_catalog",
]
