"""
ASGI entry point: ``uvicorn marker_editor.asgi:app``
"""

from marker_editor.app import create_asgi_app

app = create_asgi_app()
