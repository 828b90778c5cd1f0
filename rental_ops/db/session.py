import os

from .engine import create_store_engine, make_session_factory


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_OPS_DB_URL = _require_env("RENTAL_OPS_DB_URL")
RENTAL_OPS_DB_POOL_TIMEOUT = int(os.environ.get("RENTAL_OPS_DB_POOL_TIMEOUT") or "30")

engine_rental_ops = create_store_engine(RENTAL_OPS_DB_URL, RENTAL_OPS_DB_POOL_TIMEOUT)

SessionLocalRentalOps = make_session_factory(engine_rental_ops)
