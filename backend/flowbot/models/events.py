# /flowbot/models/events.py

from typing import Optional
from pydantic import BaseModel, Field, model_validator


class InboundEvent(BaseModel):
    """One inbound chat event for a project: either free text or a button reply."""
    sender_identity: str = Field(..., description="Sender's WhatsApp phone number")
    project_id: str = Field(..., description="Project owning the flow")
    text: Optional[str] = Field(default=None, description="Free-text message body")
    button_reply_id: Optional[str] = Field(default=None, description="Reply id of a pressed button")
    button_reply_title: Optional[str] = Field(default=None, description="Title of a pressed button")
    message_id: Optional[str] = Field(default=None, description="Provider message id (wamid)")

    @model_validator(mode="after")
    def exactly_one_payload(self):
        has_button = bool(self.button_reply_id or self.button_reply_title)
        if (self.text is not None) == has_button:
            raise ValueError("An event carries either text or a button reply, not both or neither")
        return self

    @property
    def is_button_reply(self) -> bool:
        return self.text is None

    @property
    def input_text(self) -> str:
        """Text fed to the flow: the message body, or the pressed button's title."""
        if self.text is not None:
            return self.text
        return self.button_reply_title or self.button_reply_id or ""
