"""
Capital allocation package.
"""

from copybot.allocation.capital_allocator import DEFAULT_TOTAL_MARGIN, CapitalAllocator

__all__ = [
    "DEFAULT_TOTAL_MARGIN",
    "CapitalAllocator",
]
