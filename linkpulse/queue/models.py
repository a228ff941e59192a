"""
Data models for queue messages.
"""

from pydantic import BaseModel, Field


class ClickMessage(BaseModel):
    """
    A click event as handed to the consumer.

    On the wire the body is the bare short code. receipt_handle is whatever
    the backend needs to delete this delivery of the message.
    """

    body: str = Field(..., description="The short code that was visited")
    receipt_handle: str = Field(..., description="Backend token used to delete the message")
    receive_count: int = Field(1, description="How many times the message has been delivered")

    @property
    def short_code(self) -> str:
        return self.body.strip()
