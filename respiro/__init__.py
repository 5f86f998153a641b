"""
Respiro
=======

Adaptive nudge-decision engine for a personal stress-awareness agent.
"""

__version__ = "0.3.0"
