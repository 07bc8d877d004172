"""
Read-side statistics for the admin dashboard.
"""

from jobrelay.stats.aggregator import StatsAggregator

__all__ = ["StatsAggregator"]
