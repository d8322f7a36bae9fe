"""
Aggregation for Nephyra: probe results in, one SystemSnapshot out.
"""

from .aggregator import Aggregator, aggregate, merge_facts

__all__ = [
    "Aggregator",
    "aggregate",
    "merge_facts",
]
