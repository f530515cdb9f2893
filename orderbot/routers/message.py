from functools import lru_cache

from fastapi import APIRouter, Depends

from orderbot.config import settings
from orderbot.schemas.message import MessageRequest, MessageResponse
from orderbot.services.conversation_engine import ConversationEngine, build_engine
from orderbot.services.session_state import Coordinate

router = APIRouter()

MSG_DROPPED = "Message dropped"


@lru_cache(maxsize=1)
def get_engine() -> ConversationEngine:
    return build_engine(settings)


@router.post("/message", response_model=MessageResponse)
async def handle_message(request: MessageRequest, engine: ConversationEngine = Depends(get_engine)):
    """Handle one inbound customer message and return the replies it produced."""
    location = None
    if request.latitude is not None and request.longitude is not None:
        location = Coordinate(request.latitude, request.longitude)

    result = await engine.handle(
        request.tenant_id,
        request.from_address,
        body=request.body,
        reply_id=request.reply_id,
        location=location,
        profile_name=request.profile_name,
    )

    if result.dropped:
        return MessageResponse(success=False, customer_key=result.customer_key, message=MSG_DROPPED)

    return MessageResponse(
        success=True,
        customer_key=result.customer_key,
        stage=result.stage.value if result.stage else None,
        messages=[outbound.to_payload() for outbound in result.messages],
    )
