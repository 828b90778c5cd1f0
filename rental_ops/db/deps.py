from collections.abc import Generator

from .session import SessionLocalRentalOps


def get_rental_ops_db() -> Generator:
    db = SessionLocalRentalOps()
    try:
        yield db
    finally:
        db.close()
