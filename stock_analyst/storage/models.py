from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AnalysisHistory(Base):
    """One finished analysis"""
    __tablename__ = "analysis_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stock_code = Column(String(20), nullable=False)
    stock_name = Column(String(100), nullable=True, default="")
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_analysis_history_created", "created_at"),
    )


class HistoryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stock_code: str
    stock_name: str = ""
    content: str
    created_at: datetime
