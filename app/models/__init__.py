from app.models.conversation import Conversation
from app.models.conversation_lease import ConversationLease
from app.models.dedup_record import DedupRecord
from app.models.followup_task import FollowupTask
from app.models.message import Message

__all__ = [
    "Conversation",
    "ConversationLease",
    "Message",
    "DedupRecord",
    "FollowupTask",
]
