"""Async database drivers.

Engine-specific driver modules (asyncpg, aiomysql, aioodbc, oracledb) are
imported by ``DriverRegistry`` when their platform is first opened.
"""

from .base import DriverConnection, Row
from .registry import BUILTIN_DRIVERS, DriverRegistry

__all__ = [
    "DriverConnection",
    "DriverRegistry",
    "BUILTIN_DRIVERS",
    "Row",
]
