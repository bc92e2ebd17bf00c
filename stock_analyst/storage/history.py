import logging
from contextlib import contextmanager
from typing import Generator, List, Optional

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from stock_analyst.storage.models import AnalysisHistory, Base, HistoryRecord

logger = logging.getLogger(__name__)


class HistoryStore:
    """SQLite-backed analysis history. Every write is a single committed statement."""

    def __init__(self, db_url: str = "sqlite:///history.db", echo: bool = False):
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        self.engine = create_engine(db_url, echo=echo, connect_args=connect_args)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Create all tables"""
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def append(self, stock_code: str, content: str, stock_name: str = "") -> HistoryRecord:
        with self.session_scope() as session:
            row = AnalysisHistory(stock_code=stock_code, stock_name=stock_name or "", content=content)
            session.add(row)
            session.flush()
            record = HistoryRecord.model_validate(row)
        logger.info("Saved analysis %s for %s (%d chars)", record.id, stock_code, len(content))
        return record

    def list_recent(self, limit: int = 50) -> List[HistoryRecord]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(AnalysisHistory)
                .order_by(AnalysisHistory.created_at.desc(), AnalysisHistory.id.desc())
                .limit(limit)
            ).all()
            return [HistoryRecord.model_validate(row) for row in rows]

    def get(self, record_id: int) -> Optional[HistoryRecord]:
        with self.session_scope() as session:
            row = session.get(AnalysisHistory, record_id)
            return HistoryRecord.model_validate(row) if row is not None else None

    def delete(self, record_id: int) -> bool:
        with self.session_scope() as session:
            result = session.execute(delete(AnalysisHistory).where(AnalysisHistory.id == record_id))
            return result.rowcount > 0

    def delete_all(self) -> int:
        with self.session_scope() as session:
            result = session.execute(delete(AnalysisHistory))
            return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
