"""
Matching Package
Site-to-boundary resolution, evidence, arbitration and route intersection
"""

from . import models
from . import names
from . import polyline

__all__ = ['models', 'names', 'polyline']
