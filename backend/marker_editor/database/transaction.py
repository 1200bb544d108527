"""
Ordered multi-statement writes executed atomically.
"""

from typing import Any, Sequence

import aiosqlite

from marker_editor.errors import StorageError
from marker_editor.logging import get_logger

logger = get_logger('database.transaction')


class Transaction:
    """
    Collects parameterized statements and runs them inside one SAVEPOINT.

    Statements run in the order they were added. Either every statement is
    applied, or none are.
    """

    def __init__(self, name: str = "marker_transaction"):
        self.name = name
        self._statements: list[tuple[str, Sequence[Any]]] = []

    def add(self, query: str, params: Sequence[Any] = ()) -> "Transaction":
        self._statements.append((query, tuple(params)))
        return self

    def empty(self) -> bool:
        return not self._statements

    def __len__(self) -> int:
        return len(self._statements)

    async def execute(self, db: aiosqlite.Connection) -> None:
        """
        Run every statement, committing on success and rolling back on any failure.

        :param db: Open connection to run the statements on
        :type db: aiosqlite.Connection
        :raises StorageError: If any statement fails. Nothing is applied.
        """
        if self.empty():
            return

        logger.debug(f"Executing {len(self)} statements in {self.name}")
        open_savepoint = False
        try:
            await db.execute(f"SAVEPOINT {self.name}")
            open_savepoint = True
            for query, params in self._statements:
                await db.execute(query, params)
            await db.execute(f"RELEASE SAVEPOINT {self.name}")
            open_savepoint = False
            await db.commit()
        except Exception as e:
            if open_savepoint:
                await db.execute(f"ROLLBACK TO SAVEPOINT {self.name}")
                await db.execute(f"RELEASE SAVEPOINT {self.name}")
            raise StorageError.from_db_error(e, f"Transaction {self.name} failed") from e
