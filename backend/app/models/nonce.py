from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from app.database import Base

class AuthNonce(Base):
    __tablename__ = "auth_nonces"

    value = Column(String(64), primary_key=True)
    issued_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
