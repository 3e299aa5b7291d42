from cvflow.models.base import Base
from cvflow.models.conversation import ConversationState, ConversationStatus
from cvflow.models.flow import Flow

__all__ = [
    "Base",
    "Flow",
    "ConversationState",
    "ConversationStatus",
]
