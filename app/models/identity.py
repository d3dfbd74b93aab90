from sqlalchemy import Column, DateTime, String

from app.database import Base


class IdentityEntry(Base):
    __tablename__ = "identities"

    id = Column(String(128), primary_key=True)
    phone = Column(String(32), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
