"""
Brandgraph Identity - cross-brand identity resolution and session stitching
"""

__version__ = "1.0.0"
