"""Service mode for flake-info."""

from .app import build_service_app, create_app, run_service

__all__ = ["build_service_app", "create_app", "run_service"]
