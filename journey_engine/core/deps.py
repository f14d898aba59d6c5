from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from journey_engine.db.session import SessionLocal
from journey_engine.services.journey_executor import JourneyRuntime, build_runtime


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_runtime(db: Session = Depends(get_db)) -> JourneyRuntime:
    return build_runtime(db)
