# util/db.py
import os
import psycopg
from psycopg.rows import dict_row

DATABASE_URL = os.getenv("DATABASE_URL")

def db(timeout: float | None = None):
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL not set")
    if timeout is None:
        return psycopg.connect(DATABASE_URL, row_factory=dict_row)
    # connect_timeout 只吃整數秒；statement_timeout 用毫秒
    return psycopg.connect(
        DATABASE_URL,
        row_factory=dict_row,
        connect_timeout=max(1, int(timeout)),
        options=f"-c statement_timeout={int(timeout * 1000)}",
    )
