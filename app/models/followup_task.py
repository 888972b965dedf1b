import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Text, Uuid

from app.database import Base


class FollowupTask(Base):
    __tablename__ = "followup_tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    task_type = Column(Text, nullable=False)  # follow_up, qualification, review
    title = Column(Text, nullable=False)
    reason = Column(Text)
    status = Column(Text, nullable=False, default="open")  # open, done
    due_at = Column(DateTime(timezone=True))
    task_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
