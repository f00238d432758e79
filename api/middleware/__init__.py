from .request_id import RequestIDMiddleware, get_request_id, client_ip_of
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_request_id",
    "client_ip_of",
]
