"""
Configuration loading for Cost Pulse.
"""
