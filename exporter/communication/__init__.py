"""
HTTP communication layer of the exporter.

Modules:
    http_server: FastAPI routes and the uvicorn server wrapper
"""

from .http_server import ExporterHTTPServer, ProcessClock, create_app

__all__ = [
    'ExporterHTTPServer',
    'ProcessClock',
    'create_app',
]
