from orderbot.models.conversation_session import ConversationSessionRow

__all__ = [
    "ConversationSessionRow",
]
