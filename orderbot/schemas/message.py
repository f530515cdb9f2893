from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class MessageRequest(BaseModel):
    tenant_id: str
    from_address: str = Field(validation_alias=AliasChoices("from_address", "from", "remote_jid"))
    body: str = ""
    reply_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("reply_id", "button_payload"))
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    profile_name: Optional[str] = None


class MessageResponse(BaseModel):
    success: bool
    customer_key: Optional[str] = None
    stage: Optional[str] = None
    messages: list[dict[str, Any]] = []
    message: Optional[str] = None
