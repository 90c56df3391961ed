"""HTTP surface: FastAPI application, routers and service wiring."""

from agentflow.api.app import Services, build_services, create_app, main

__all__ = [
    "Services",
    "build_services",
    "create_app",
    "main",
]
