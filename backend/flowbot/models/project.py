# /flowbot/models/project.py

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowbot.models.flow import FlowGraph


class Project(BaseModel):
    """A project document as stored by the account service, reduced to what the runtime needs."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: Optional[str] = None
    phone_number_id: Optional[str] = Field(default=None, alias="whatsappPhoneNumberId")
    access_token: Optional[str] = Field(default=None, alias="whatsappAccessToken")
    is_active: bool = Field(default=True, alias="isActive")
    flow: Optional[FlowGraph] = Field(default=None, alias="fileTree")

    @field_validator("id", mode="before")
    @classmethod
    def stringify_object_id(cls, v):
        return str(v) if v is not None else v
