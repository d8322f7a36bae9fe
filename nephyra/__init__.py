# Nephyra
# Correlation & Recommendation Engine for Linux hosts

"""
Core invariant: every recommendation traces back to observed facts.

Probes observe, the Aggregator builds one immutable snapshot per pass,
rules turn the snapshot into findings, and the ranker orders and explains
them. Nothing here changes the host.
"""

__version__ = "0.1.0"
