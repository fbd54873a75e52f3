from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

Record = dict[str, Any]


class AbstractRecordStore(ABC):
	"""Interface for the authoritative record store.

	Implementations raise ``RecordNotFoundError`` for unknown ids and
	``RemoteWriteError`` for any other failed write.
	"""

	@abstractmethod
	async def read(self, table: str, filters: Mapping[str, Any] | None = None) -> list[Record]:
		"""Return the records of ``table`` whose columns equal ``filters``."""
		...

	@abstractmethod
	async def write(
		self,
		table: str,
		target_id: Any,
		changes: Mapping[str, Any],
		*,
		actor_id: str | None = None,
	) -> Record:
		"""Apply ``changes`` to one record and return it as persisted."""
		...

	@abstractmethod
	async def insert(self, table: str, record: Mapping[str, Any], *, actor_id: str | None = None) -> Record:
		"""Create a record (an id is assigned when missing) and return it."""
		...

	@abstractmethod
	async def delete(self, table: str, target_id: Any, *, actor_id: str | None = None) -> Record:
		"""Remove one record and return its last state."""
		...

	async def aclose(self) -> None:
		"""Release connections; a no-op by default."""
