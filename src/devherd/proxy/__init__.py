"""Route table and reverse proxy."""

from .route_table import RouteEntry, RouteTable, RouteTableHolder
from .server import ROUTES_PATH, ReverseProxy

__all__ = ["ROUTES_PATH", "ReverseProxy", "RouteEntry", "RouteTable", "RouteTableHolder"]
