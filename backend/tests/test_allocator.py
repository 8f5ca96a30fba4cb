from datetime import timedelta

import pytest

from app.models.enums import AllocationMode, CellStatus, IdeaStatus, VotingMode
from app.models.idea import Idea
from app.services import allocator, ledger, registry

from conftest import T0


@pytest.mark.parametrize(
    "n, sizes",
    [
        (0, []),
        (2, []),
        (3, [3]),
        (7, [7]),
        (8, [5, 3]),
        (9, [5, 4]),
        (11, [5, 6]),
        (12, [5, 7]),
        (13, [5, 5, 3]),
        (25, [5, 5, 5, 5, 5]),
    ],
)
def test_calculate_cell_sizes(n: int, sizes: list[int]) -> None:
    assert allocator.calculate_cell_sizes(n) == sizes


def test_calculate_cell_sizes_spreads_small_remainder() -> None:
    # Remainder of 2 is too big for one cell (max 5) and too small for its own.
    assert allocator.calculate_cell_sizes(10, target=4, minimum=3, maximum=5) == [5, 5]


def test_every_planned_cell_is_within_bounds() -> None:
    for n in range(3, 200):
        sizes = allocator.calculate_cell_sizes(n)
        assert sum(sizes) == n
        assert all(3 <= size <= 7 for size in sizes), (n, sizes)


def test_pack_units_keeps_order() -> None:
    assert allocator.pack_units(list(range(8))) == [[0, 1, 2, 3, 4], [5, 6, 7]]


def test_assign_balanced_avoids_own_ideas() -> None:
    assignment = allocator.assign_balanced(["a", "b", "c", "d"], [{"a"}, {"c"}])
    assert assignment == [["c", "b"], ["a", "d"]]


def test_form_cells_scenario_one_five_cells_of_five(db, seeded) -> None:
    deliberation, _, _ = seeded(25)

    cells = allocator.form_cells(db, deliberation, 1, T0)
    db.commit()

    assert [len(cell.ideas) for cell in cells] == [5, 5, 5, 5, 5]
    assert all(cell.votes_needed == 5 for cell in cells)
    ideas = registry.list_ideas(db, deliberation.id)
    assert all(idea.status == IdeaStatus.IN_VOTING for idea in ideas)
    assert all(idea.times_presented == 1 for idea in ideas)

    # Ideas already sitting in an open cell are not formable again.
    assert allocator.form_cells(db, deliberation, 1, T0) == []


def test_form_cells_leaves_too_few_ideas_queued(db, seeded) -> None:
    deliberation, _, _ = seeded(2)

    assert allocator.form_cells(db, deliberation, 1, T0) == []
    assert {idea.status for idea in registry.list_ideas(db, deliberation.id)} == {IdeaStatus.QUEUED}


def test_plurality_first_tier_needs_one_voter_per_idea(db, seeded) -> None:
    deliberation, _, _ = seeded(8, voting_mode=VotingMode.PLURALITY)

    cells = allocator.form_cells(db, deliberation, 1, T0)
    db.commit()

    assert [cell.votes_needed for cell in cells] == [5, 3]


def test_balanced_seats_every_member_away_from_their_own_idea(db, seeded) -> None:
    deliberation, authors, voters = seeded(10, voters=4, allocation_mode=AllocationMode.BALANCED)

    cells = allocator.form_cells(db, deliberation, 1, T0)
    db.commit()

    assert len(cells) == 2
    seated = [seat.participant_id for cell in cells for seat in cell.seats]
    assert sorted(seated, key=str) == sorted([p.id for p in authors + voters], key=str)
    for cell in cells:
        assert cell.votes_needed == len(cell.seats) == 7
        own = {idea.author_id for idea in registry.list_ideas(db, deliberation.id) if idea.id in cell.idea_ids}
        assert not own & {seat.participant_id for seat in cell.seats}


def test_group_quorum_counts_one_vote_per_earlier_cell(db, seeded) -> None:
    deliberation, authors, voters = seeded(
        15, voters=6, allocation_mode=AllocationMode.BALANCED, group_quorum=True
    )
    first_tier = allocator.form_cells(db, deliberation, 1, T0)
    db.commit()
    assert [cell.group_quorum for cell in first_tier] == [False, False, False]
    for cell in first_tier:
        cell.status = CellStatus.COMPLETED
        for idea_id in cell.idea_ids[:2]:
            idea = db.get(Idea, idea_id)
            registry.move_idea(idea, IdeaStatus.ADVANCING, tier=2)
            registry.move_idea(idea, IdeaStatus.QUEUED)
    db.commit()

    members = [p.id for p in authors + voters]
    groups = allocator.previous_tier_groups(db, deliberation, 2, members)
    assert sorted(key for key, _ in groups) == sorted(str(cell.id) for cell in first_tier)
    for key, group in groups:
        seated = next(cell for cell in first_tier if str(cell.id) == key)
        assert sorted(group, key=str) == sorted((seat.participant_id for seat in seated.seats), key=str)

    second_tier = allocator.form_cells(db, deliberation, 2, T0 + timedelta(minutes=1))
    db.commit()
    assert second_tier
    for cell in second_tier:
        assert cell.group_quorum
        assert cell.votes_needed == len({seat.group_key for seat in cell.seats})

    cell = max(second_tier, key=lambda c: c.votes_needed)
    by_group: dict[str, list] = {}
    for seat in cell.seats:
        by_group.setdefault(seat.group_key, []).append(seat.participant_id)
    target = cell.idea_ids[0]
    now = T0 + timedelta(minutes=2)
    keys = sorted(by_group)

    ledger.cast_vote(db, by_group[keys[0]][0], cell.id, [(target, 10)], now)
    receipt = ledger.cast_vote(db, by_group[keys[0]][1], cell.id, [(target, 10)], now)
    # A second voter from the same earlier cell does not move the count.
    assert receipt.voter_count == 1

    for key in keys[1:]:
        receipt = ledger.cast_vote(db, by_group[key][0], cell.id, [(target, 10)], now)
    assert receipt.voter_count == receipt.votes_needed == len(keys)
    assert receipt.finalizes_at is not None
    db.refresh(cell)
    assert ledger.quorum_count(db, cell) == len(keys)
