"""
Bridge-facing entry points.
"""

from matrix_puppet.bridges.puppet import Puppet

__all__ = [
    "Puppet",
]
