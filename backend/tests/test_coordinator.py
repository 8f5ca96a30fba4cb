from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from app.core.errors import InvalidPhase
from app.models.cell import Cell
from app.models.deliberation import Deliberation
from app.models.enums import AdvancementPolicy, CellStatus, IdeaStatus, Phase, TierStatus
from app.models.event import Event
from app.models.idea import Idea
from app.services import coordinator, evaluator, ledger, registry, reservations, timers

from conftest import T0


START = T0 + timedelta(seconds=10)
VOTED = START + timedelta(seconds=5)
DUE = VOTED + timedelta(seconds=10)


def _vote(db, cell, voter, allocations, now=VOTED):
    reservations.reserve_seat(db, voter.id, cell.id, now)
    return ledger.cast_vote(db, voter.id, cell.id, allocations, now)


def _ordered_ideas(db, cell) -> list:
    return [
        idea.id
        for idea in sorted((db.get(Idea, idea_id) for idea_id in cell.idea_ids), key=lambda i: i.created_at)
    ]


def _reload(db, deliberation) -> Deliberation:
    db.expire_all()
    return db.get(Deliberation, deliberation.id)


def _events(db, deliberation, event_type: str) -> list[Event]:
    return list(
        db.execute(
            select(Event).where(Event.deliberation_id == deliberation.id, Event.type == event_type)
        ).scalars()
    )


def test_no_ideas_completes_without_voting(db, seeded) -> None:
    deliberation, _, _ = seeded(0)

    result = coordinator.start_voting(db, deliberation.id, START)

    assert result["reason"] == "no_ideas"
    assert _reload(db, deliberation).phase == Phase.COMPLETED


def test_single_idea_wins_immediately(db, seeded) -> None:
    deliberation, _, _ = seeded(1)

    result = coordinator.start_voting(db, deliberation.id, START)

    deliberation = _reload(db, deliberation)
    idea = registry.list_ideas(db, deliberation.id)[0]
    assert result["reason"] == "single_idea"
    assert idea.status == IdeaStatus.WINNER
    assert deliberation.phase == Phase.COMPLETED
    assert deliberation.champion_id == idea.id
    assert len(_events(db, deliberation, "winner_declared")) == 1


def test_start_voting_twice_is_rejected(db, seeded) -> None:
    deliberation, _, _ = seeded(4)
    coordinator.start_voting(db, deliberation.id, START)

    with pytest.raises(InvalidPhase):
        coordinator.start_voting(db, deliberation.id, START)


def test_scenario_one_five_winners_reach_tier_two(db, seeded) -> None:
    deliberation, _, voters = seeded(25, voters=10, cell_voters_target=2)
    coordinator.start_voting(db, deliberation.id, START)
    cells = coordinator.tier_cells(db, deliberation, 1)
    assert [len(cell.ideas) for cell in cells] == [5, 5, 5, 5, 5]

    winners = []
    for i, cell in enumerate(cells):
        top = _ordered_ideas(db, cell)[0]
        winners.append(top)
        _vote(db, cell, voters[2 * i], [(top, 10)])
        _vote(db, cell, voters[2 * i + 1], [(top, 10)])

    report = timers.process_due(db, DUE, deliberation_id=deliberation.id)

    deliberation = _reload(db, deliberation)
    assert report["cells_finalized"] == 5
    assert deliberation.current_tier == 2
    assert coordinator.get_tier(db, deliberation, 1).status == TierStatus.COMPLETED
    final = coordinator.tier_cells(db, deliberation, 2)
    assert len(final) == 1 and final[0].is_final_vote
    assert set(final[0].idea_ids) == set(winners)
    assert all(db.get(Idea, idea_id).tier == 2 for idea_id in winners)
    eliminated = registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.ELIMINATED,))
    assert len(eliminated) == 20
    assert len(_events(db, deliberation, "tier_complete")) == 1


def test_final_vote_between_two_ideas(db, seeded) -> None:
    deliberation, authors, _ = seeded(2)
    coordinator.start_voting(db, deliberation.id, START)
    cell = coordinator.tier_cells(db, deliberation, 1)[0]
    first, second = _ordered_ideas(db, cell)

    assert cell.is_final_vote
    assert cell.votes_needed == 2
    # Authors may vote in the final even though their own idea is on the ballot.
    _vote(db, cell, authors[0], [(second, 10)])
    _vote(db, cell, authors[1], [(second, 7), (first, 3)])
    timers.process_due(db, DUE, deliberation_id=deliberation.id)

    deliberation = _reload(db, deliberation)
    assert deliberation.phase == Phase.COMPLETED
    assert deliberation.champion_id == second
    assert db.get(Idea, second).status == IdeaStatus.WINNER
    assert db.get(Idea, first).status == IdeaStatus.ELIMINATED


def test_scenario_three_deadline_forces_and_abandons(db, seeded) -> None:
    deliberation, _, voters = seeded(10, voters=3, voting_timeout_seconds=60)
    coordinator.start_voting(db, deliberation.id, START)
    cell_a, cell_b = coordinator.tier_cells(db, deliberation, 1)
    winner = _ordered_ideas(db, cell_a)[2]
    _vote(db, cell_a, voters[0], [(winner, 10)])
    _vote(db, cell_a, voters[1], [(winner, 8), (_ordered_ideas(db, cell_a)[0], 2)])
    _vote(db, cell_b, voters[2], [(_ordered_ideas(db, cell_b)[0], 10)])

    report = timers.process_due(db, START + timedelta(seconds=61), deliberation_id=deliberation.id)

    assert report["cells_forced"] == 2
    db.expire_all()
    cell_a, cell_b = coordinator.tier_cells(db, _reload(db, deliberation), 1)
    assert cell_a.status == CellStatus.COMPLETED and cell_a.completed_by_timeout
    assert cell_b.status == CellStatus.ABANDONED
    assert all(db.get(Idea, idea_id).status == IdeaStatus.ELIMINATED for idea_id in cell_b.idea_ids)
    deliberation = _reload(db, deliberation)
    assert deliberation.champion_id == winner
    assert deliberation.phase == Phase.COMPLETED


def test_must_vote_participant_extends_deadline_once(db, seeded) -> None:
    deliberation, _, voters = seeded(5, voters=2, voting_timeout_seconds=60)
    deliberation.must_vote_participant_id = voters[1].id
    db.commit()
    coordinator.start_voting(db, deliberation.id, START)
    cell = coordinator.tier_cells(db, deliberation, 1)[0]
    top = _ordered_ideas(db, cell)[0]
    _vote(db, cell, voters[0], [(top, 10)])

    report = timers.process_due(db, START + timedelta(seconds=61), deliberation_id=deliberation.id)

    db.refresh(cell)
    assert report["deadlines_extended"] == 1
    assert cell.status == CellStatus.VOTING
    assert cell.deadline_extended
    assert coordinator.get_tier(db, _reload(db, deliberation), 1).extended

    _vote(db, cell, voters[1], [(top, 10)], START + timedelta(seconds=70))
    timers.process_due(db, START + timedelta(seconds=92), deliberation_id=deliberation.id)

    db.expire_all()
    assert coordinator.tier_cells(db, _reload(db, deliberation), 1)[0].status == CellStatus.COMPLETED
    assert db.get(Idea, top).status == IdeaStatus.WINNER


def test_supermajority_forces_stragglers_after_grace(db, seeded) -> None:
    deliberation, _, voters = seeded(25, voters=8, cell_voters_target=2, supermajority_enabled=True)
    coordinator.start_voting(db, deliberation.id, START)
    cells = coordinator.tier_cells(db, deliberation, 1)
    for i, cell in enumerate(cells[:4]):
        top = _ordered_ideas(db, cell)[0]
        _vote(db, cell, voters[2 * i], [(top, 10)])
        _vote(db, cell, voters[2 * i + 1], [(top, 10)])

    timers.process_due(db, DUE, deliberation_id=deliberation.id)
    timers.process_due(db, DUE + timedelta(seconds=599), deliberation_id=deliberation.id)
    straggler = cells[4]
    db.expire_all()
    assert db.get(type(straggler), straggler.id).status == CellStatus.VOTING

    report = timers.process_due(db, DUE + timedelta(seconds=600), deliberation_id=deliberation.id)

    assert report["supermajority_forced"] == 1
    deliberation = _reload(db, deliberation)
    assert db.get(type(straggler), straggler.id).status == CellStatus.ABANDONED
    final = coordinator.tier_cells(db, deliberation, 2)
    assert len(final) == 1 and final[0].is_final_vote
    assert len(final[0].ideas) == 4


def _prime_gate_bracket(db, seeded):
    deliberation, _, voters = seeded(
        25,
        voters=5,
        cell_voters_target=1,
        advancement_policy=AdvancementPolicy.PRIME_GATE,
    )
    coordinator.start_voting(db, deliberation.id, START)
    cells = coordinator.tier_cells(db, deliberation, 1)
    for i, cell in enumerate(cells[:3]):
        x0, x1, x2, x3, _ = _ordered_ideas(db, cell)
        # Three-way tie: every cell sends three ideas up.
        _vote(db, cell, voters[i], [(x0, 3), (x1, 3), (x2, 3), (x3, 1)])

    timers.process_due(db, DUE, deliberation_id=deliberation.id)
    return _reload(db, deliberation), cells, voters


def test_prime_gate_advances_early_and_absorbs_stragglers(db, seeded) -> None:
    deliberation, cells, voters = _prime_gate_bracket(db, seeded)

    assert deliberation.current_tier == 2
    assert coordinator.get_tier(db, deliberation, 1).status == TierStatus.COMPLETED
    assert [len(cell.ideas) for cell in coordinator.tier_cells(db, deliberation, 2)] == [5, 4]
    assert {cell.status for cell in coordinator.tier_cells(db, deliberation, 1)[3:]} == {CellStatus.VOTING}

    late = _ordered_ideas(db, cells[3])[0]
    _vote(db, cells[3], voters[3], [(late, 10)], DUE + timedelta(seconds=5))
    timers.process_due(db, DUE + timedelta(seconds=20), deliberation_id=deliberation.id)

    db.expire_all()
    idea = db.get(Idea, late)
    assert idea.status == IdeaStatus.QUEUED
    assert idea.tier == 2


def test_late_winner_joins_open_final_and_leftovers_close_with_it(db, seeded) -> None:
    deliberation, cells, voters = _prime_gate_bracket(db, seeded)
    for voter, cell in zip(voters[:2], coordinator.tier_cells(db, deliberation, 2)):
        _vote(db, cell, voter, [(_ordered_ideas(db, cell)[0], 10)], DUE + timedelta(seconds=5))
    timers.process_due(db, DUE + timedelta(seconds=20), deliberation_id=deliberation.id)

    deliberation = _reload(db, deliberation)
    assert deliberation.current_tier == 3
    [final] = coordinator.tier_cells(db, deliberation, 3)
    assert final.is_final_vote and len(final.ideas) == 2

    late = _ordered_ideas(db, cells[3])[0]
    _vote(db, cells[3], voters[3], [(late, 10)], DUE + timedelta(seconds=25))
    timers.process_due(db, DUE + timedelta(seconds=40), deliberation_id=deliberation.id)

    db.expire_all()
    idea = db.get(Idea, late)
    final = db.get(Cell, final.id)
    assert idea.status == IdeaStatus.IN_VOTING
    assert idea.tier == 3
    assert late in final.idea_ids and len(final.ideas) == 3

    for voter in (voters[2], voters[4]):
        _vote(db, final, voter, [(late, 10)], DUE + timedelta(seconds=45))
    evaluator.finalize_cell(db, final.id, DUE + timedelta(seconds=50), forced=True)

    deliberation = _reload(db, deliberation)
    assert deliberation.phase == Phase.COMPLETED
    assert deliberation.champion_id == late
    assert db.get(Cell, cells[4].id).status == CellStatus.ABANDONED
    # Nothing is left mid-bracket once the final has closed.
    statuses = {i.status for i in registry.list_ideas(db, deliberation.id)}
    assert statuses <= {IdeaStatus.WINNER, IdeaStatus.ELIMINATED}


def test_split_challengers_retires_repeat_losers_down_to_minimum() -> None:
    ideas = [SimpleNamespace(name=n, losses=l) for n, l in zip("abcdefgh", [0, 3, 2, 0, 2, 0, 0, 0])]

    retire, compete, bench = coordinator.split_challengers(ideas, 5)

    assert [i.name for i in retire] == ["b", "c", "e"]
    assert len(compete) == 5 and bench == []

    crowded = [SimpleNamespace(name=n, losses=l) for n, l in zip("abcdef", [2, 2, 2, 2, 0, 0])]
    retire, compete, bench = coordinator.split_challengers(crowded, 5)
    assert [i.name for i in retire] == ["a"]
    assert [i.name for i in bench] == ["b", "c", "d"]
    assert [i.name for i in compete] == ["e", "f"]


def _crowned(db, seeded, people, voters: int = 0, **options):
    deliberation, _, extra = seeded(1, voters=voters, accumulation_enabled=True, **options)
    coordinator.start_voting(db, deliberation.id, START)
    champion = registry.list_ideas(db, deliberation.id)[0]
    return deliberation, champion, extra


def test_winner_starts_accumulation(db, seeded, people) -> None:
    deliberation, champion, _ = _crowned(db, seeded, people)

    deliberation = _reload(db, deliberation)
    assert deliberation.phase == Phase.ACCUMULATING
    assert deliberation.champion_id == champion.id
    assert deliberation.champion_entered_tier == 2

    challenger = people(1)[0]
    idea = registry.submit_idea(db, deliberation.id, challenger.id, "a challenger", now=START + timedelta(seconds=1))
    assert idea.status == IdeaStatus.PENDING and idea.is_new


def test_scenario_four_champion_defends_in_one_cell(db, seeded, people) -> None:
    deliberation, champion, voters = _crowned(db, seeded, people, voters=2, cell_voters_target=2)
    challengers = people(4)
    for i, author in enumerate(challengers):
        registry.submit_idea(db, deliberation.id, author.id, f"challenger {i}", now=START + timedelta(seconds=i + 1))

    result = coordinator.start_challenge_round(db, deliberation.id, START + timedelta(minutes=5))

    deliberation = _reload(db, deliberation)
    assert result["champion_seeded"] is True
    assert deliberation.phase == Phase.VOTING
    assert deliberation.challenge_round == 1
    cells = coordinator.tier_cells(db, deliberation, 1)
    assert len(cells) == 1
    assert len(cells[0].ideas) == 5
    assert champion.id in cells[0].idea_ids
    assert db.get(Idea, champion.id).status == IdeaStatus.DEFENDING
    assert len(_events(db, deliberation, "challenge_round_started")) == 1

    # A challenger takes the crown.
    now = START + timedelta(minutes=6)
    upstart = _ordered_ideas(db, cells[0])[1]
    _vote(db, cells[0], voters[0], [(upstart, 10)], now)
    _vote(db, cells[0], voters[1], [(upstart, 10)], now)
    timers.process_due(db, now + timedelta(seconds=10), deliberation_id=deliberation.id)

    deliberation = _reload(db, deliberation)
    assert deliberation.phase == Phase.ACCUMULATING
    assert deliberation.champion_id == upstart
    assert db.get(Idea, champion.id).status == IdeaStatus.ELIMINATED


def test_challenge_without_challengers_extends_window(db, seeded, people) -> None:
    deliberation, _, _ = _crowned(db, seeded, people)
    later = START + timedelta(hours=1)

    result = coordinator.start_challenge_round(db, deliberation.id, later)

    deliberation = _reload(db, deliberation)
    assert result == {"extended": True, "reason": "no_challengers"}
    assert deliberation.phase == Phase.ACCUMULATING
    assert deliberation.accumulation_ends_at.replace(tzinfo=None) == (
        later + timedelta(seconds=deliberation.accumulation_timeout_seconds)
    ).replace(tzinfo=None)


def test_accumulation_threshold_starts_challenge(db, seeded, people) -> None:
    deliberation, champion, _ = _crowned(db, seeded, people, accumulation_threshold=2)
    for i, author in enumerate(people(2)):
        registry.submit_idea(db, deliberation.id, author.id, f"challenger {i}", now=START + timedelta(seconds=i + 1))

    report = timers.process_due(db, START + timedelta(seconds=5), deliberation_id=deliberation.id)

    deliberation = _reload(db, deliberation)
    assert report["challenge_rounds_started"] == 1
    assert deliberation.challenge_round == 1
    cell = coordinator.tier_cells(db, deliberation, 1)[0]
    assert len(cell.ideas) == 3 and champion.id in cell.idea_ids


def test_accumulation_timeout_starts_challenge(db, seeded, people) -> None:
    deliberation, _, _ = _crowned(db, seeded, people)
    for i, author in enumerate(people(3)):
        registry.submit_idea(db, deliberation.id, author.id, f"challenger {i}", now=START + timedelta(seconds=i + 1))

    quiet = timers.process_due(db, START + timedelta(hours=1), deliberation_id=deliberation.id)
    assert quiet["challenge_rounds_started"] == 0

    timeout = timedelta(seconds=_reload(db, deliberation).accumulation_timeout_seconds)
    report = timers.process_due(db, START + timeout + timedelta(seconds=1), deliberation_id=deliberation.id)

    assert report["challenge_rounds_started"] == 1
    assert _reload(db, deliberation).phase == Phase.VOTING


def test_close_deliberation_only_while_accumulating(db, seeded, people) -> None:
    deliberation, champion, _ = _crowned(db, seeded, people)

    closed = coordinator.close_deliberation(db, deliberation.id, START + timedelta(seconds=1))

    assert closed.phase == Phase.COMPLETED
    assert closed.champion_id == champion.id
    with pytest.raises(InvalidPhase):
        coordinator.close_deliberation(db, deliberation.id)
