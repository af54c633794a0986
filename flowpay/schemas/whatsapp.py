from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EvolutionMessageKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    remote_jid: Optional[str] = Field(default=None, alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    id: Optional[str] = None


class EvolutionMessageData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key: EvolutionMessageKey = Field(default_factory=EvolutionMessageKey)
    push_name: Optional[str] = Field(default=None, alias="pushName")
    message: Optional[dict[str, Any]] = None
    state: Optional[str] = None

    @property
    def command(self) -> Optional[str]:
        """Plain text, or the selected row id when the user answered a list message."""
        message = self.message or {}
        list_response = message.get("listResponseMessage")
        if isinstance(list_response, dict):
            reply = list_response.get("singleSelectReply") or {}
            return reply.get("selectedRowId")
        text = message.get("conversation")
        if not text:
            text = (message.get("extendedTextMessage") or {}).get("text")
        return text or None


class EvolutionEvent(BaseModel):
    instance: Optional[str] = None
    event: Optional[str] = None
    data: EvolutionMessageData = Field(default_factory=EvolutionMessageData)
