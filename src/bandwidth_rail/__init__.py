"""
Bandwidth Rail

Usage metering, settlement and payouts for a bandwidth-sharing network:
partners pay per relayed GB, contributors earn a share and cash out.
"""

__version__ = "1.0.0"
