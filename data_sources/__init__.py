"""
Data Sources Package
API clients and storage for boundary, evidence, arbitration and activity data
"""

from . import utils
from . import error_handling
from . import retry_config
from . import cache
from . import region_config

__all__ = ['utils', 'error_handling', 'retry_config', 'cache', 'region_config']
