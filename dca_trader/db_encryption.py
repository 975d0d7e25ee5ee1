"""SQLite encryption at rest using sqlcipher (optional extra).

Without a password the standard library sqlite3 driver is used. With a
password, sqlcipher3 must be installed (``pip install dca-trader[encryption]``).
"""
import sqlite3
from typing import Optional


def has_sqlcipher() -> bool:
    """Check if sqlcipher is available."""
    try:
        import sqlcipher3  # type: ignore  # noqa: F401
        return True
    except ImportError:
        return False


def get_encrypted_connection(db_path: str, password: str, timeout: int = 30):
    """Open an encrypted database.

    Raises:
        RuntimeError: If sqlcipher is not installed or the password is wrong
    """
    try:
        import sqlcipher3 as sqlite3_enc  # type: ignore
    except ImportError:
        raise RuntimeError(
            "sqlcipher3 is not installed. Install with: pip install sqlcipher3-binary\n"
            "Or leave encryption_password unset for an unencrypted database."
        )

    conn = sqlite3_enc.connect(db_path, timeout=timeout, check_same_thread=False)
    escaped = password.replace("'", "''")
    conn.execute(f"PRAGMA key = '{escaped}'")
    conn.execute("PRAGMA cipher_page_size = 4096")
    try:
        conn.execute("SELECT name FROM sqlite_master LIMIT 1")
    except Exception as e:
        raise RuntimeError(f"Failed to open encrypted database (wrong password?): {e}")
    return conn


def get_connection(db_path: str, password: Optional[str] = None, timeout: int = 30):
    """Get a SQLite connection, encrypted when a password is given.

    Connections are shared with worker threads (``asyncio.to_thread``), so
    same-thread checking is disabled.
    """
    if password:
        return get_encrypted_connection(db_path, password, timeout)
    return sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
