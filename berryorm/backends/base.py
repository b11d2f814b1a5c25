from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence


@dataclass(frozen=True)
class WriteResult:
    rowcount: int
    last_id: Any = None


class Backend:
    """Execution backend: runs compiled statement text with positional values.

    Implementations own connections and drivers; the ORM core only ever hands
    them finished text plus values. Driver failures must surface as
    :class:`~berryorm.errors.BackendError` with the original exception chained.
    """

    name = 'base'
    # True when independent statements may run concurrently (asyncio.gather)
    supports_concurrency = False

    @property
    def dialect(self):
        raise NotImplementedError

    async def execute(self, text: str, values: Sequence[Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def execute_scalar(self, text: str, values: Sequence[Any]) -> Any:
        raise NotImplementedError

    async def execute_write(self, text: str, values: Sequence[Any], *, returning: bool = False) -> WriteResult:
        raise NotImplementedError
