"""ASGI entry point for servers that expect a module-level app: `uvicorn asgi:app`."""

from main import create_app

app = create_app()
