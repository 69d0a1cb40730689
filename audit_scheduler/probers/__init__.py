"""
Probers: the per-URL checks run by the worker pool.
"""

from .base import BaseProber, FunctionProber, ProbeContext, ProberRegistry, as_prober
from .http_prober import HttpStatusProber

# Default registry with the bundled probers
default_registry = ProberRegistry()
default_registry.register('http', HttpStatusProber, {'timeout': 30.0})

__all__ = [
    'BaseProber',
    'FunctionProber',
    'ProbeContext',
    'ProberRegistry',
    'as_prober',
    'HttpStatusProber',
    'default_registry',
]
