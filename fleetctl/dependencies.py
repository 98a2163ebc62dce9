from sqlmodel import Session
from fleetctl.core.database import engine
from typing import Generator
from fastapi import Depends
from fleetctl.services import RunnerService, HistoryService

def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session

def get_runner_service(db: Session = Depends(get_db)) -> RunnerService:
    return RunnerService(db)

def get_history_service(db: Session = Depends(get_db)) -> HistoryService:
    return HistoryService(db)
