"""
Domain Services
"""
from hookgate.domain.services.delivery_service import DeliveryService
from hookgate.domain.services.execution_service import ExecutionService
from hookgate.domain.services.handler_registry import (
    HandlerRegistry,
    HandlerResolver,
    HandlerResult,
    RegistrySnapshot,
    StaticDefinitionSource,
    registry,
)
from hookgate.domain.services.intake_service import IntakeResult, IntakeService

__all__ = [
    "DeliveryService",
    "ExecutionService",
    "HandlerRegistry",
    "HandlerResolver",
    "HandlerResult",
    "RegistrySnapshot",
    "StaticDefinitionSource",
    "registry",
    "IntakeResult",
    "IntakeService",
]
