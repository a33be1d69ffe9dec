"""
aza-pg tools - PostgreSQL image build and runtime configuration.

Builds the extension set declared in the manifest into a PostgreSQL
image and sizes a running instance to the container it lands in.
"""

__version__ = "1.0.0"
__author__ = "aza-pg maintainers"
