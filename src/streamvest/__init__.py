"""
streamvest - fixed-rate conversion into linearly vesting token streams.
"""

__version__ = "0.1.0"
