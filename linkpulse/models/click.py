from sqlalchemy import Column, DateTime, ForeignKey
from sqlalchemy.sql import func
from linkpulse.database.connection import Base
from linkpulse.models.url import ID_TYPE


class Click(Base):
    """
    One processed click event. Append-only.

    A redelivered queue message produces an extra row, so counts are
    "at least this many clicks happened".
    """
    __tablename__ = "clicks"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    url_id = Column(ID_TYPE, ForeignKey("urls.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
