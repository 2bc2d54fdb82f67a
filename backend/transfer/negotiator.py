"""
Batch negotiation: what the sender offers and what the receiver takes.

The proposal is immutable once sent. The receiver edits a separate
``PendingDecision`` file by file and finalizes it into exactly one
``BatchDecision``.
"""

import logging
from typing import Iterable

from pydantic import ValidationError

from transfer.errors import InvalidBatch
from transfer.models import BatchDecision, BatchProposal, FileDescriptor

logger = logging.getLogger(__name__)


def build_proposal(files: list[FileDescriptor]) -> BatchProposal:
    """Describe ``files`` as a proposal.

    Raises:
        InvalidBatch: no files, or two files share a name.
    """
    if not files:
        raise InvalidBatch("No files selected")
    try:
        return BatchProposal(
            files=tuple(f.entry() for f in files),
            total_count=len(files),
        )
    except ValidationError as e:
        raise InvalidBatch(f"Invalid batch: {e.errors()[0]['msg']}") from e


def filter_accepted(
    files: list[FileDescriptor], accepted_names: Iterable[str]
) -> tuple[list[FileDescriptor], list[FileDescriptor]]:
    """Split held files into (accepted, rejected), keeping proposal order."""
    wanted = set(accepted_names)
    known = {f.name for f in files}
    for name in wanted - known:
        logger.warning(f"Peer accepted unknown file '{name}', ignoring")
    accepted = [f for f in files if f.name in wanted]
    rejected = [f for f in files if f.name not in wanted]
    return accepted, rejected


class PendingDecision:
    """A received proposal plus the receiver's choices so far.

    Every file starts selected.
    """

    def __init__(self, proposal: BatchProposal) -> None:
        self.proposal = proposal
        self._selected: set[str] = set(proposal.names)
        self._decision: BatchDecision | None = None

    @property
    def finalized(self) -> bool:
        return self._decision is not None

    @property
    def selected(self) -> list[str]:
        """Currently accepted names, in proposal order."""
        return [n for n in self.proposal.names if n in self._selected]

    def _check(self, name: str) -> None:
        if self._decision is not None:
            raise InvalidBatch("Decision already sent")
        if name not in self.proposal.names:
            raise InvalidBatch(f"'{name}' is not part of this batch")

    def accept(self, name: str) -> None:
        self._check(name)
        self._selected.add(name)

    def reject(self, name: str) -> None:
        self._check(name)
        self._selected.discard(name)

    def toggle(self, name: str) -> bool:
        """Flip one file; returns whether it is now accepted."""
        self._check(name)
        if name in self._selected:
            self._selected.discard(name)
            return False
        self._selected.add(name)
        return True

    def accept_all(self) -> None:
        if self._decision is not None:
            raise InvalidBatch("Decision already sent")
        self._selected = set(self.proposal.names)

    def reject_all(self) -> None:
        if self._decision is not None:
            raise InvalidBatch("Decision already sent")
        self._selected.clear()

    def finalize(self, names: Iterable[str] | None = None) -> BatchDecision:
        """Freeze the selection, optionally replacing it with ``names``."""
        if self._decision is not None:
            raise InvalidBatch("Decision already sent")
        if names is not None:
            chosen = set(names)
            unknown = chosen - set(self.proposal.names)
            if unknown:
                raise InvalidBatch(
                    f"Not part of this batch: {', '.join(sorted(unknown))}"
                )
            self._selected = chosen
        self._decision = BatchDecision(accepted_files=tuple(self.selected))
        return self._decision

    def to_dict(self) -> dict:
        return {
            "files": [f.model_dump() for f in self.proposal.files],
            "total_count": self.proposal.total_count,
            "selected": self.selected,
        }
