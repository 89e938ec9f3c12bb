"""
asgi.py -- Application assembly for the marketplace auth service.

This is the only place that reads configuration for the ASGI server. Settings
are resolved once here and passed into create_app(); a missing or short
SECRET_KEY stops the process before the first request is served.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app
from core.config import get_settings

app = create_app(get_settings())
