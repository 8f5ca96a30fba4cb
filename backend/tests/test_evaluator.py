from datetime import timedelta

import pytest

from app.core.errors import InvalidTransition
from app.models.cell import Cell
from app.models.enums import CellOutcome, CellStatus, IdeaStatus
from app.models.idea import Idea
from app.services import coordinator, evaluator, ledger, registry, reservations

from conftest import T0


START = T0 + timedelta(seconds=10)
VOTED = START + timedelta(seconds=5)
DUE = VOTED + timedelta(seconds=10)


def _cell(db, seeded, ideas: int, voters: int = 2, **options):
    options.setdefault("cell_voters_target", voters)
    deliberation, _, extra = seeded(ideas, voters=voters, **options)
    coordinator.start_voting(db, deliberation.id, START)
    cell = coordinator.tier_cells(db, deliberation, 1)[0]
    ideas_by_order = sorted(
        (db.get(Idea, idea_id) for idea_id in cell.idea_ids),
        key=lambda idea: idea.created_at,
    )
    return deliberation, cell, [idea.id for idea in ideas_by_order], extra


def _vote(db, cell, voter, allocations, now=VOTED):
    reservations.reserve_seat(db, voter.id, cell.id, now)
    return ledger.cast_vote(db, voter.id, cell.id, allocations, now)


def test_recycle_floor_boundary_in_minimum_cell(db, seeded) -> None:
    _, cell, (a, b, c), voters = _cell(db, seeded, 3)
    _vote(db, cell, voters[0], [(a, 8), (b, 2)])
    _vote(db, cell, voters[1], [(a, 9), (c, 1)])

    result = evaluator.finalize_cell(db, cell.id, DUE, advance=False)

    assert result is not None
    assert result.winner_ids == [a]
    assert result.recycled_ids == [b]
    assert result.eliminated_ids == [c]
    assert db.get(Idea, a).status == IdeaStatus.ADVANCING
    assert db.get(Idea, a).tier == 2
    assert db.get(Idea, b).status == IdeaStatus.RECYCLED
    assert db.get(Idea, c).status == IdeaStatus.ELIMINATED
    assert db.get(Idea, b).losses == db.get(Idea, c).losses == 1
    outcomes = {ci.idea_id: ci.outcome for ci in db.get(Cell, cell.id).ideas}
    assert outcomes == {a: CellOutcome.WON, b: CellOutcome.RECYCLED, c: CellOutcome.ELIMINATED}


def test_finalize_waits_for_grace_window(db, seeded) -> None:
    _, cell, (a, b, _), voters = _cell(db, seeded, 3)
    _vote(db, cell, voters[0], [(a, 10)])

    assert evaluator.finalize_cell(db, cell.id, DUE) is None  # no quorum yet
    _vote(db, cell, voters[1], [(b, 10)])
    assert evaluator.finalize_cell(db, cell.id, VOTED + timedelta(seconds=9)) is None
    db.refresh(cell)
    assert cell.status == CellStatus.VOTING


def test_finalize_is_idempotent(db, seeded) -> None:
    _, cell, (a, b, c), voters = _cell(db, seeded, 3)
    _vote(db, cell, voters[0], [(a, 6), (b, 4)])
    _vote(db, cell, voters[1], [(a, 6), (c, 4)])

    first = evaluator.finalize_cell(db, cell.id, DUE, advance=False)
    before = {idea_id: (db.get(Idea, idea_id).status, db.get(Idea, idea_id).losses) for idea_id in (a, b, c)}

    assert first is not None
    assert evaluator.finalize_cell(db, cell.id, DUE, advance=False) is None
    assert evaluator.finalize_cell(db, cell.id, DUE, forced=True, advance=False) is None
    db.expire_all()
    after = {idea_id: (db.get(Idea, idea_id).status, db.get(Idea, idea_id).losses) for idea_id in (a, b, c)}
    assert before == after


def test_tied_ideas_all_advance_and_evaluation_is_repeatable(db, seeded) -> None:
    _, cell, (a, b, c), voters = _cell(db, seeded, 3)
    _vote(db, cell, voters[0], [(a, 5), (b, 5)])
    _vote(db, cell, voters[1], [(a, 5), (b, 5)])

    tallies = evaluator.tally_cell(db, cell)
    assert evaluator.winner_ids(tallies) == evaluator.winner_ids(evaluator.tally_cell(db, cell))
    assert set(evaluator.winner_ids(tallies)) == {a, b}

    result = evaluator.finalize_cell(db, cell.id, DUE, advance=False)
    assert set(result.winner_ids) == {a, b}
    assert result.eliminated_ids == [c]


def test_forced_evaluation_below_floor_abandons(db, seeded) -> None:
    _, cell, ids, voters = _cell(db, seeded, 4, voters=5)
    _vote(db, cell, voters[0], [(ids[0], 10)])

    result = evaluator.finalize_cell(db, cell.id, DUE, forced=True, by_timeout=True, advance=False)

    assert result.status == CellStatus.ABANDONED
    assert set(result.eliminated_ids) == set(ids)
    assert all(db.get(Idea, idea_id).status == IdeaStatus.ELIMINATED for idea_id in ids)
    db.refresh(cell)
    assert cell.completed_by_timeout is True


def test_forced_evaluation_with_two_votes_completes(db, seeded) -> None:
    _, cell, ids, voters = _cell(db, seeded, 4, voters=5)
    _vote(db, cell, voters[0], [(ids[1], 10)])
    _vote(db, cell, voters[1], [(ids[1], 7), (ids[2], 3)])

    result = evaluator.finalize_cell(db, cell.id, DUE, forced=True, advance=False)

    assert result.status == CellStatus.COMPLETED
    assert result.winner_ids == [ids[1]]
    assert result.recycled_ids == [ids[2]]


def test_default_advance_moves_every_idea_forward(db, seeded) -> None:
    _, cell, ids, _ = _cell(db, seeded, 3)

    result = evaluator.default_advance_cell(db, cell, DUE)
    db.commit()

    assert set(result.winner_ids) == set(ids)
    assert all(db.get(Idea, idea_id).status == IdeaStatus.ADVANCING for idea_id in ids)


def test_transitions_are_one_way(db, seeded) -> None:
    deliberation, _, _ = seeded(1)
    idea = registry.list_ideas(db, deliberation.id)[0]

    registry.move_idea(idea, IdeaStatus.IN_VOTING)
    registry.move_idea(idea, IdeaStatus.ELIMINATED)
    with pytest.raises(InvalidTransition):
        registry.move_idea(idea, IdeaStatus.QUEUED)
    with pytest.raises(InvalidTransition):
        registry.move_idea(idea, IdeaStatus.IN_VOTING)
    db.rollback()

    assert not registry.can_move(IdeaStatus.ADVANCING, IdeaStatus.RECYCLED)
    assert not registry.can_move(IdeaStatus.IN_VOTING, IdeaStatus.QUEUED)
    assert registry.TERMINAL_STATUSES == {IdeaStatus.ELIMINATED, IdeaStatus.RETIRED}
