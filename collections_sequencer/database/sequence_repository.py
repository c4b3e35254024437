"""
Sequence state store.

Defines the persistence interface the controller relies on and an
in-memory implementation. Sequences are stored as serialized snapshots so a
save replaces the whole record at once and readers never see a half-applied
mutation.
"""

import abc
from typing import Any, Dict, List, Optional

import structlog

from collections_sequencer.core.exceptions import CorruptRecord, NotFound
from collections_sequencer.models.sequence import Sequence, SequenceStatus

logger = structlog.get_logger(__name__)


class SequenceRepository(abc.ABC):
    """Persistence interface for collection sequences."""

    @abc.abstractmethod
    async def get(self, sequence_id: str) -> Sequence:
        """
        Load a sequence.

        Raises:
            NotFound: If no sequence has this id
            CorruptRecord: If the stored record cannot be loaded
        """

    @abc.abstractmethod
    async def save(self, sequence: Sequence) -> Sequence:
        """Insert or replace a sequence atomically."""

    @abc.abstractmethod
    async def list_ids(self, status: Optional[SequenceStatus] = None) -> List[str]:
        """
        Ids of stored sequences, optionally filtered by stored status.

        Records whose stored status is not a known status always match a
        filter, so callers load them and report them as corrupt.
        """

    @abc.abstractmethod
    async def list_by_account(self, account_id: str) -> List[Sequence]:
        """All loadable sequences for an account."""

    async def list_sequences(self, status: Optional[SequenceStatus] = None) -> List[Sequence]:
        """
        Load every sequence, skipping records that fail to load.

        Corrupt records are logged rather than raised so a single bad record
        never hides the rest.
        """
        sequences = []
        for sequence_id in await self.list_ids(status):
            try:
                sequences.append(await self.get(sequence_id))
            except CorruptRecord as e:
                logger.warning(
                    "Skipping corrupt sequence record",
                    sequence_id=sequence_id,
                    error=str(e),
                )
            except NotFound:
                continue
        return sequences

    async def find_open_by_account(self, account_id: str) -> Optional[Sequence]:
        """The account's non-terminal sequence, if any."""
        for sequence in await self.list_by_account(account_id):
            if not sequence.is_terminal:
                return sequence
        return None

    async def health_check(self) -> bool:
        return True


class InMemorySequenceRepository(SequenceRepository):
    """
    In-memory sequence store.

    Used for development and tests. In production this would be backed by
    the practice-management database.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    async def get(self, sequence_id: str) -> Sequence:
        record = self._records.get(sequence_id)
        if record is None:
            raise NotFound(f"Collection sequence '{sequence_id}' not found", sequence_id=sequence_id)
        return Sequence.from_dict(record)

    async def save(self, sequence: Sequence) -> Sequence:
        self._records[sequence.sequence_id] = sequence.to_dict()

        logger.debug(
            "Saved sequence",
            sequence_id=sequence.sequence_id,
            account_id=sequence.account_id,
            status=sequence.status.value,
            current_step_offset=sequence.current_step_offset,
        )

        return sequence

    async def list_ids(self, status: Optional[SequenceStatus] = None) -> List[str]:
        if status is None:
            return list(self._records)
        wanted = SequenceStatus(status).value
        known = {s.value for s in SequenceStatus}
        return [
            sequence_id
            for sequence_id, record in self._records.items()
            if record.get("status") == wanted or record.get("status") not in known
        ]

    async def list_by_account(self, account_id: str) -> List[Sequence]:
        sequences = []
        for sequence_id, record in self._records.items():
            if record.get("account_id") != account_id:
                continue
            try:
                sequences.append(Sequence.from_dict(record))
            except CorruptRecord as e:
                logger.warning(
                    "Skipping corrupt sequence record",
                    sequence_id=sequence_id,
                    account_id=account_id,
                    error=str(e),
                )
        return sequences

    def put_raw(self, record: Dict[str, Any]) -> None:
        """Store a raw record without validation (imports and fixtures)."""
        self._records[record["sequence_id"]] = dict(record)

    def __len__(self) -> int:
        return len(self._records)
