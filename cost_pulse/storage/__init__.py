"""
Storage layer for Cost Pulse.

SQLite persistence for cost samples and daily rollups.
"""
