"""ASGI entrypoint for the canvas studio API."""

from canvas_studio.api.app import create_app
from canvas_studio.containers import build_container

app = create_app(build_container())
