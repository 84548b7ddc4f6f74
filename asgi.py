"""
asgi.py -- Application assembly for StaffGate.

Settings are resolved exactly once here and handed to the app factory; no
other module reads the environment.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app
from core.config import get_settings

app = create_app(get_settings())
