"""FastAPI dependencies"""
from typing import Generator

from sqlalchemy.orm import Session

from stockleague.db.session import close_db_session, get_db as get_db_session
from stockleague.services.daily_screener import DailyScreenerScorer


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = get_db_session()
    try:
        yield db
    finally:
        close_db_session(db)


def get_screener() -> DailyScreenerScorer:
    """Get the daily screener scorer (read models only)"""
    return DailyScreenerScorer()
