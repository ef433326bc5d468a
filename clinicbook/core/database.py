from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator
import redis
from .config import settings

# SQLite doesn't support pool_size/max_overflow, PostgreSQL does
if settings.get_database_url.startswith("sqlite"):
    engine = create_engine(
        settings.get_database_url,
        connect_args={"check_same_thread": False}
    )
else:
    engine = create_engine(
        settings.get_database_url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections after 30 minutes
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Deletes a lock only while it still holds the caller's token
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# Redis setup - mock for testing
if settings.TESTING:
    # Use a simple dict-based mock for Redis in tests
    class RedisMock:
        def __init__(self):
            self.data = {}
            self.ttl = {}

        def set(self, key, value, nx=False, ex=None):
            if nx and key in self.data:
                return None
            self.data[key] = value
            if ex is not None:
                self.ttl[key] = ex
            return True

        def get(self, key):
            return self.data.get(key)

        def eval(self, script, numkeys, *keys_and_args):
            if script != RELEASE_LOCK_SCRIPT:
                raise NotImplementedError("RedisMock only evaluates the lock release script")
            key, token = keys_and_args
            if self.data.get(key) == token:
                return self.delete(key)
            return 0

        def delete(self, key):
            if key in self.data:
                del self.data[key]
                self.ttl.pop(key, None)
                return 1
            return 0

        def flushall(self):
            self.data.clear()
            self.ttl.clear()
            return True

    redis_client = RedisMock()
else:
    # Real Redis client for production
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

def release_lock(client, key: str, token: str) -> bool:
    """Release ``key`` if it is still held with ``token``."""
    return bool(client.eval(RELEASE_LOCK_SCRIPT, 1, key, token))

# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Redis dependency
def get_redis():
    """Get Redis client."""
    return redis_client

# Database initialization
def init_db():
    """Initialize database tables."""
    # Register models on the metadata before creating tables
    from .. import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
