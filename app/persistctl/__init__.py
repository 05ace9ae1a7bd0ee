"""persistctl - Persist selected paths of an ephemeral root filesystem.

Computes the ordered set of directory creations, bind mounts and symlinks
that relocate configured paths onto persistent storage, and executes them.
"""

__version__ = "0.1.0"
