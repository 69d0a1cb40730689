"""
Bounded, prioritized and retrying URL probe scheduler.
"""

__version__ = "1.0.0"
