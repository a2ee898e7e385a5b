from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app_config


@lru_cache(maxsize=1)
def get_engine():
    return create_engine(app_config.DATABASE_URL, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_session_factory():
    return sessionmaker(bind=get_engine(), autocommit=False, autoflush=False, expire_on_commit=False)
