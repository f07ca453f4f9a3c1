from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from floodwatch.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def init_db():
    import floodwatch.models.assessment  # noqa: F401
    import floodwatch.models.policy  # noqa: F401
    Base.metadata.create_all(bind=engine)
