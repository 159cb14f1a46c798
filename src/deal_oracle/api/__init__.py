"""
DEAL ORACLE - API Module

FastAPI server exposing the deal lifecycle over HTTP.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
