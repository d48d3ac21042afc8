"""
Database Models
"""
from hookgate.db.models.provider import ProviderRow
from hookgate.db.models.incoming_event import IncomingEventRow
from hookgate.db.models.handler_definition import HandlerDefinitionRow
from hookgate.db.models.execution_record import ExecutionRecordRow
from hookgate.db.models.outbound import OutboundDeliveryRow, OutboundEndpointRow

__all__ = [
    "ProviderRow",
    "IncomingEventRow",
    "HandlerDefinitionRow",
    "ExecutionRecordRow",
    "OutboundEndpointRow",
    "OutboundDeliveryRow",
]
