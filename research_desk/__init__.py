"""
Research Desk - the data aggregation and resilience layer behind a
financial-research dashboard.

Fans out to financial-statement, news, sentiment and congressional-trading
providers, tracks per-slice loading status, merges multi-provider feeds,
repairs generative output and persists user artifacts under a capacity cap.
"""

__version__ = "0.1.0"
