from datetime import timedelta

import pytest

from app.core.errors import CellFull, DeadlinePassed, NotEligible
from app.models.cell import Reservation
from app.models.enums import AllocationMode
from app.models.idea import Idea
from app.services import coordinator, ledger, registry, reservations

from conftest import T0


START = T0 + timedelta(seconds=10)


def _cells(db, deliberation):
    coordinator.start_voting(db, deliberation.id, START)
    return coordinator.tier_cells(db, deliberation, 1)


def test_reserve_is_idempotent_while_live(db, seeded) -> None:
    deliberation, _, voters = seeded(5, voters=1)
    cell = _cells(db, deliberation)[0]

    first = reservations.reserve_seat(db, voters[0].id, cell.id, START)
    again = reservations.reserve_seat(db, voters[0].id, cell.id, START + timedelta(seconds=30))

    assert again.id == first.id
    assert reservations.occupied_seats(db, cell, START + timedelta(seconds=30)) == 1


def test_full_cell_rejects_new_reservations(db, seeded) -> None:
    deliberation, _, voters = seeded(5, voters=3, cell_voters_target=2)
    cell = _cells(db, deliberation)[0]
    reservations.reserve_seat(db, voters[0].id, cell.id, START)
    reservations.reserve_seat(db, voters[1].id, cell.id, START)

    with pytest.raises(CellFull) as exc:
        reservations.reserve_seat(db, voters[2].id, cell.id, START)
    assert exc.value.code == "cell_full"


def test_expired_reservation_frees_the_seat(db, seeded) -> None:
    deliberation, _, voters = seeded(5, voters=2, cell_voters_target=1)
    cell = _cells(db, deliberation)[0]
    reservations.reserve_seat(db, voters[0].id, cell.id, START)
    later = START + timedelta(seconds=91)

    swept = reservations.sweep_expired_reservations(db, later, deliberation_id=deliberation.id)
    db.commit()

    assert swept == 1
    assert db.query(Reservation).filter(Reservation.cell_id == cell.id).count() == 0
    held = reservations.reserve_seat(db, voters[1].id, cell.id, later)
    assert held.participant_id == voters[1].id


def test_authors_cannot_reserve_their_own_cell(db, seeded) -> None:
    deliberation, authors, _ = seeded(5)
    cell = _cells(db, deliberation)[0]

    with pytest.raises(NotEligible):
        reservations.reserve_seat(db, authors[1].id, cell.id, START)


def test_one_seat_per_tier(db, seeded) -> None:
    deliberation, _, voters = seeded(10, voters=1)
    first, second = _cells(db, deliberation)
    reservations.reserve_seat(db, voters[0].id, first.id, START)

    with pytest.raises(NotEligible):
        reservations.reserve_seat(db, voters[0].id, second.id, START)


def test_non_members_and_closed_cells_are_refused(db, seeded, people) -> None:
    deliberation, _, voters = seeded(5, voters=1, voting_timeout_seconds=60)
    cell = _cells(db, deliberation)[0]
    outsider = people(1)[0]

    with pytest.raises(NotEligible):
        reservations.reserve_seat(db, outsider.id, cell.id, START)
    with pytest.raises(DeadlinePassed):
        reservations.reserve_seat(db, voters[0].id, cell.id, START + timedelta(seconds=60))


def test_balanced_cells_take_no_reservations(db, seeded, people) -> None:
    deliberation, _, _ = seeded(5, allocation_mode=AllocationMode.BALANCED)
    cell = _cells(db, deliberation)[0]
    latecomer = people(1)[0]
    registry.join_deliberation(db, deliberation.id, latecomer.id, START)

    with pytest.raises(NotEligible):
        reservations.reserve_seat(db, latecomer.id, cell.id, START)


def test_final_vote_opens_to_agents_after_human_window(db, seeded, people) -> None:
    deliberation, authors, _ = seeded(2)
    agent = people(1, is_agent=True)[0]
    registry.join_deliberation(db, deliberation.id, agent.id, T0)
    cell = _cells(db, deliberation)[0]
    assert cell.is_final_vote

    with pytest.raises(NotEligible):
        reservations.reserve_seat(db, agent.id, cell.id, START + timedelta(seconds=5))
    # Humans, authors included, may take a final-vote seat straight away.
    reservations.reserve_seat(db, authors[0].id, cell.id, START + timedelta(seconds=5))

    held = reservations.reserve_seat(db, agent.id, cell.id, START + timedelta(seconds=61))
    assert held.participant_id == agent.id


def test_find_open_cell_prefers_held_seat_then_fullest_cell(db, seeded) -> None:
    deliberation, _, voters = seeded(10, voters=3)
    first, second = _cells(db, deliberation)
    reservations.reserve_seat(db, voters[0].id, second.id, START)

    assert reservations.find_open_cell(db, deliberation.id, voters[0].id, START).id == second.id
    # The cell closest to full is offered first.
    assert reservations.find_open_cell(db, deliberation.id, voters[1].id, START).id == second.id


def test_find_open_cell_skips_cells_with_own_idea(db, seeded) -> None:
    deliberation, authors, _ = seeded(10)
    first, second = _cells(db, deliberation)
    own = {db.get(Idea, idea_id).author_id for idea_id in first.idea_ids}
    author = next(a for a in authors if a.id in own)

    assert reservations.find_open_cell(db, deliberation.id, author.id, START).id == second.id


def test_vote_turns_reservation_into_seat(db, seeded) -> None:
    deliberation, _, voters = seeded(5, voters=1)
    cell = _cells(db, deliberation)[0]
    reservations.reserve_seat(db, voters[0].id, cell.id, START)

    ledger.cast_vote(db, voters[0].id, cell.id, [(cell.idea_ids[0], 10)], START)

    assert ledger.get_seat(db, cell.id, voters[0].id) is not None
    assert reservations.occupied_seats(db, cell, START) == 1
