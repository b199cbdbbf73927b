# Database Configuration and Session Management

from sqlalchemy import create_engine, event, func
from sqlalchemy.orm import sessionmaker, Session
import logging

from config.app_config import DATABASE_URL

logger = logging.getLogger(__name__)


def create_db_engine(url: str = DATABASE_URL):
    """
    Build an engine for the given URL.

    SQLite connections start every transaction with BEGIN IMMEDIATE so that
    concurrent writers queue on the busy timeout instead of failing on lock
    upgrade.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=False  # Set to True for SQL query logging
    )


# Create engine
engine = create_db_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency for FastAPI
def get_db() -> Session:
    """
    FastAPI dependency to get database session.
    Usage: db: Session = Depends(get_db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Initialize database tables.
    Run this once to create all tables.
    """
    from database.models import Base
    from database.marketplace_models import Order, OrderSequence
    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    # Seed the order counter past any existing order
    with Session(bind=bind) as db:
        if db.get(OrderSequence, "orders") is None:
            last = db.query(func.max(Order.sequence_no)).scalar() or 0
            db.add(OrderSequence(name="orders", last_value=last))
            db.commit()
    logger.info("Database tables created successfully")


if __name__ == "__main__":
    # Create tables when run directly
    logging.basicConfig(level=logging.INFO)
    init_db()
