"""
API routers package
"""
from gate_intel.api import system, gates

__all__ = [
    "system",
    "gates",
]
