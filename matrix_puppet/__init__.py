"""
Matrix user puppeting for bridges.
"""

from matrix_puppet.bridges.puppet import Puppet
from matrix_puppet.core.mxid import parse_mxid

__all__ = ["Puppet", "parse_mxid"]
__version__ = "0.1.0"
