"""
splforge
========
Atomic multi-transaction orchestration for SPL token operations.
"""

__version__ = "0.1.0"
