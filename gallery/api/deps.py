"""FastAPI dependencies exposing the service graph stored on the app."""

from fastapi import Request

from gallery.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
