"""
HoldReg - Holding Registry

Actors register a claimed holding of an asset; the registry reports
whether that claim is still backed by a live balance.
"""

__version__ = "0.1.0"
