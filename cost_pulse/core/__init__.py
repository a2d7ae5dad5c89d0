"""
Core modules for Cost Pulse.

This package contains date key handling, hourly usage inference,
the refresh cycle and the maintenance routine.
"""
