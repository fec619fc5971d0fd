from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from dotenv import load_dotenv

from config.settings import settings

load_dotenv()

DATABASE_URL = settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    """Pool settings for server databases, thread check off for SQLite"""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "echo": settings.DB_ECHO}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 1800,  # MySQL drops idle connections after wait_timeout
        "pool_timeout": 30,
        "echo": settings.DB_ECHO,
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Create SessionLocal class with optimized settings
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False  # Keep objects loaded after commit
)

# Create Base class
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Function to create all tables
def create_tables():
    Base.metadata.create_all(bind=engine)

# Function to drop all tables (use with caution)
def drop_tables():
    Base.metadata.drop_all(bind=engine)
