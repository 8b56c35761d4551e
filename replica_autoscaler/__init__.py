"""
Replica autoscaler.
Periodic control loop that scales services between replica bounds
based on load metrics.
"""

__version__ = "0.1.0"
