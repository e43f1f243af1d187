from contextlib import asynccontextmanager, suppress

import psycopg
import structlog
from psycopg.rows import dict_row

from .errors import PersistenceError

logger = structlog.get_logger().bind(component="db")


@asynccontextmanager
async def get_conn(database_url: str):
    try:
        conn = await psycopg.AsyncConnection.connect(database_url, row_factory=dict_row)
    except psycopg.OperationalError as e:
        logger.error("db_connect_failed", error=str(e))
        raise PersistenceError("Database unavailable") from e
    try:
        yield conn
        await conn.commit()
    except psycopg.OperationalError as e:
        # The connection may already be gone; the original error is what matters.
        with suppress(psycopg.Error):
            await conn.rollback()
        logger.error("db_transaction_failed", error=str(e))
        raise PersistenceError("Database operation failed") from e
    except Exception:
        await conn.rollback()
        raise
    finally:
        await conn.close()
