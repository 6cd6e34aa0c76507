"""
dm — Dora Manager.

Install, switch and supervise versions of the dora runtime.
"""

__version__ = "0.1.0"
