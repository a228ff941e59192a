from sqlalchemy import BigInteger, Column, Integer, String
from linkpulse.database.connection import Base

# SQLite only auto-assigns INTEGER PRIMARY KEY columns
ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class URL(Base):
    """
    A shortened URL.

    The id is handed out by the in-process IdAllocator, not by the database,
    and short_code is always encode(id). Rows are immutable once written.
    """
    __tablename__ = "urls"

    id = Column(ID_TYPE, primary_key=True, autoincrement=False)
    # unique=True creates the index used by load() and resolve_id()
    short_code = Column(String(16), unique=True, nullable=False)
    long_url = Column(String, nullable=False)
