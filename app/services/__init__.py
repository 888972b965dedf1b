from app.services.conversation_service import (
    get_conversation,
    get_or_create_conversation,
    touch_cooldown,
)
from app.services.message_service import (
    INBOUND,
    OUTBOUND,
    get_inbound_by_external_id,
    save_message,
)
from app.services.state_machine import (
    Stage,
    advance,
    can_transition,
)
