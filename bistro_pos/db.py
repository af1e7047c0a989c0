from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from bistro_pos.config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind=None) -> None:
    # Importing the models registers their tables on Base.metadata.
    from bistro_pos import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
