from collections.abc import Generator

from .session import SessionLocalLab


def get_lab_db() -> Generator:
    db = SessionLocalLab()
    try:
        yield db
    finally:
        db.close()
