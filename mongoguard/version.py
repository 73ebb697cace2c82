"""
Version information for mongoguard.

This file is the single source of truth for version numbers.
setup.py reads it without importing the package.
"""

__version__ = "0.1.0"
__version_info__ = (0, 1, 0)
