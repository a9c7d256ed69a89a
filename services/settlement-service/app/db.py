from shared.database import Base, get_engine, get_session

__all__ = ["Base", "build_session_factory"]


def build_session_factory(database_url: str | None):
    if not database_url:
        raise RuntimeError("SETTLEMENT_DB environment variable is not set")

    engine = get_engine(database_url, pool_pre_ping=True)
    return engine, get_session(engine)
