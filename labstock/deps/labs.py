from __future__ import annotations

from fastapi import Request

from ..services.lab_directory import LabDirectory


def lab_directory(request: Request) -> LabDirectory:
    """Directory built by ``create_app`` and attached to the app state."""

    return request.app.state.lab_directory
