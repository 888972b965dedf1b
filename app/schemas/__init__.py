from app.schemas.delivery import DeliverRequest, DeliveryResponse, InboundMessageRequest, StateResponse
from app.schemas.known_fields import KnownFields

__all__ = ["InboundMessageRequest", "DeliverRequest", "DeliveryResponse", "StateResponse", "KnownFields"]
