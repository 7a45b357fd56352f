"""
API Routers package.

Re-export the router modules so `metaads.main` can import and register them.
"""

from . import ads  # noqa: F401
from . import auth  # noqa: F401
