"""
Cost Pulse.

Tracks daily spend of AI coding assistants and rebuilds an hourly usage curve
from sparse cost samples.
"""

__version__ = "0.1.0"
