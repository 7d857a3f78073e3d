"""
Test Fixtures Package
Deterministic price sources and randomness control
"""

from .price_sources import FakeSource
from .randomness_control import ScriptedRandbelow

__all__ = [
    'FakeSource',
    'ScriptedRandbelow',
]
