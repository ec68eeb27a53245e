"""
LevelDB wrapper holding every engine record.

Multi-key updates go through `commit`, which applies one write batch so a
state transition lands completely or not at all.
"""
import plyvel
import logging
from typing import Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 64 * 1024 * 1024,  # 64MB
                 max_open_files: int = 1000,
                 compression: Optional[str] = 'snappy'):
        """
        Open (or create) the database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
            compression: 'snappy' or None
        """
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
                compression=compression,
            )
            self._closed = False
            logger.info(f"Database opened at {db_path}")
        except Exception as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    @classmethod
    def from_config(cls, config) -> 'DB':
        """Open the database described by a DatabaseConfig."""
        return cls(
            config.path,
            write_buffer_size=config.write_buffer_size,
            max_open_files=config.max_open_files,
            compression=config.compression or None,
        )

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """
        Get value by key.

        Returns None if key doesn't exist.
        """
        self._check_open()
        return self._db.get(key)

    def put(self, key: bytes, value: bytes):
        """Put a key-value pair."""
        self._check_open()
        self._db.put(key, value)

    def exists(self, key: bytes) -> bool:
        """Check if key exists."""
        return self.get(key) is not None

    def commit(self, writes: dict[bytes, Optional[bytes]]):
        """
        Apply a set of writes atomically. A value of None deletes the key.
        """
        self._check_open()
        if not writes:
            return

        try:
            with self._db.write_batch(transaction=True) as batch:
                for key, value in writes.items():
                    if value is None:
                        batch.delete(key)
                    else:
                        batch.put(key, value)
        except Exception as e:
            logger.error(f"Error in batch write of {len(writes)} keys: {e}")
            raise

    def close(self):
        """Close the database."""
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info("Database closed")

    def is_closed(self) -> bool:
        """Check if database is closed."""
        return self._closed

    def __enter__(self):
        """Support context manager protocol."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Support context manager protocol."""
        self.close()
        return False
