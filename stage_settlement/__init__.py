"""
stage_settlement
Stage settlement engine: vote aggregation, weighted ranking, reward distribution
and atomic commit of the settlement record set.
"""

__version__ = "1.0.0"
