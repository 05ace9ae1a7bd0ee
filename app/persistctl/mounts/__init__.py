"""Mount table inspection and mount primitives.

This module exports the operator performing persistence primitives and the
mount table it consults.
"""

from persistctl.mounts.operator import MountOperator
from persistctl.mounts.table import MountInfo, MountTable

__all__ = [
    "MountInfo",
    "MountOperator",
    "MountTable",
]
