from .client import close_http_client, get_http_client, post_json
from .errors import WardenHTTPError, WardenHTTPNetworkError, WardenHTTPStatusError

__all__ = [
    "close_http_client",
    "get_http_client",
    "post_json",
    "WardenHTTPError",
    "WardenHTTPNetworkError",
    "WardenHTTPStatusError",
]
