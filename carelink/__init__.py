"""
CareLink API client - resilient HTTP access layer for the CareLink app.
"""

__version__ = "0.1.0"
