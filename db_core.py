import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base
from settings import DATABASE_URL

logger = logging.getLogger(__name__)

DB_URL = DATABASE_URL

engine = create_engine(
    DB_URL,
    connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {},
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_schema(bind=None):
    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    with bind.begin() as conn:
        dups = conn.exec_driver_sql("""
            SELECT bet_id, player, COUNT(*) AS cnt
            FROM player_bets
            GROUP BY bet_id, player
            HAVING COUNT(*) > 1
        """).fetchall()
        if dups:
            logger.warning("duplicate (bet, player) rows; fix before trusting payouts: %s", dups)
