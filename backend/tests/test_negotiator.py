import pytest

from support import descriptor
from transfer.errors import InvalidBatch
from transfer.models import BatchProposal, FileEntry
from transfer.negotiator import PendingDecision, build_proposal, filter_accepted


def _proposal(*names: str) -> BatchProposal:
    return BatchProposal(
        files=tuple(FileEntry(name=n, size=10) for n in names),
        total_count=len(names),
    )


def test_build_proposal_lists_files_in_order() -> None:
    proposal = build_proposal([descriptor("a.txt", b"x" * 100), descriptor("b.txt", b"y" * 50)])
    assert proposal.total_count == 2
    assert [(f.name, f.size) for f in proposal.files] == [("a.txt", 100), ("b.txt", 50)]


def test_build_proposal_rejects_empty_and_duplicates() -> None:
    with pytest.raises(InvalidBatch):
        build_proposal([])
    with pytest.raises(InvalidBatch):
        build_proposal([descriptor("a.txt", b"1"), descriptor("a.txt", b"2")])


def test_filter_accepted_keeps_proposal_order() -> None:
    files = [descriptor(n, b"data") for n in ("a", "b", "c", "d")]
    accepted, rejected = filter_accepted(files, {"d", "b", "zzz"})
    assert [f.name for f in accepted] == ["b", "d"]
    assert [f.name for f in rejected] == ["a", "c"]


def test_pending_decision_starts_with_everything_selected() -> None:
    pending = PendingDecision(_proposal("a", "b", "c"))
    assert pending.selected == ["a", "b", "c"]

    pending.reject("b")
    assert pending.toggle("a") is False
    assert pending.toggle("a") is True
    assert pending.selected == ["a", "c"]

    decision = pending.finalize()
    assert decision.granted
    assert decision.accepted_files == ("a", "c")
    assert pending.finalized


def test_pending_decision_with_nothing_selected_is_a_denial() -> None:
    pending = PendingDecision(_proposal("a", "b"))
    pending.reject_all()
    assert pending.finalize().granted is False


def test_pending_decision_sends_once() -> None:
    pending = PendingDecision(_proposal("a"))
    pending.finalize(["a"])
    with pytest.raises(InvalidBatch):
        pending.finalize()
    with pytest.raises(InvalidBatch):
        pending.accept("a")


def test_pending_decision_rejects_unknown_names() -> None:
    pending = PendingDecision(_proposal("a"))
    with pytest.raises(InvalidBatch):
        pending.accept("b")
    with pytest.raises(InvalidBatch):
        pending.finalize(["a", "b"])
    assert not pending.finalized
