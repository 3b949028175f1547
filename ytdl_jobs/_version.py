"""
Defines the service's version string.

This is the single source of truth for the version number. It is used in
the startup banner and for packaging.
"""

__version__ = "2.1.0"
