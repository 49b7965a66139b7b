"""
CRM Connection Models
"""
from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from .database import Base


class CrmConnection(Base):
    __tablename__ = "crm_connections"

    id = Column(Integer, primary_key=True, index=True)

    # OAuth access token (encrypted)
    access_token = Column(Text, nullable=False)

    connected_at = Column(DateTime, server_default=func.now(), index=True)
