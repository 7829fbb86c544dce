from sqlalchemy import Column, String, Boolean
from .base import BaseModel


class User(BaseModel):
    """Profile fields needed to render a sender without a follow-up fetch."""

    __tablename__ = "users"

    name = Column(String(100), nullable=False)
    avatar_url = Column(String(500), nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
