from orderbot.schemas.message import MessageRequest, MessageResponse

__all__ = ["MessageRequest", "MessageResponse"]
