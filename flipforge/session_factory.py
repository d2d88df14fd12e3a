from sqlalchemy.orm import Session

from flipforge.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
