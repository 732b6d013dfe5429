from __future__ import annotations

from sqlalchemy import Column, DateTime, String

from models import Base
from utils.time_utils import utcnow_sa_default


class ConsumerOffset(Base):
    """Last acknowledged change-feed cursor per named consumer."""

    __tablename__ = "consumer_offsets"

    consumer_name = Column(String, primary_key=True)
    cursor = Column(String, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
