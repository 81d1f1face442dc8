"""Shared router dependencies."""
from fastapi import Request

from ..pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    """The process pipeline stored on the app at startup."""
    return request.app.state.pipeline
