"""Shared route dependencies."""
from fastapi import Request

from session_analyzer.services.handle import ServiceHandle


def get_services(request: Request) -> ServiceHandle:
    return request.app.state.services
