"""ASGI entry point: `uvicorn inboxsync.api.app:app`."""

from .factory import create_app

app = create_app()
