"""
FastAPI dependencies - services come from the container on app.state
"""
from fastapi import Request

from hookgate.container import ServiceContainer
from hookgate.domain.services.delivery_service import DeliveryService
from hookgate.domain.services.intake_service import IntakeService


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not initialized")
    return container


def get_intake_service(request: Request) -> IntakeService:
    return get_container(request).intake


def get_delivery_service(request: Request) -> DeliveryService:
    return get_container(request).deliveries
