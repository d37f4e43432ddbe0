"""External link request schemas."""

from pydantic import BaseModel, Field


class CompleteExternalLinkRequest(BaseModel):
    """OAuth callback values relayed by the client."""

    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
