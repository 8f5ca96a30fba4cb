import enum


class Phase(str, enum.Enum):
    SUBMISSION = "SUBMISSION"
    VOTING = "VOTING"
    ACCUMULATING = "ACCUMULATING"
    COMPLETED = "COMPLETED"


class IdeaStatus(str, enum.Enum):
    PENDING = "PENDING"  # accumulated challenger waiting for the next round
    QUEUED = "QUEUED"
    IN_VOTING = "IN_VOTING"
    ADVANCING = "ADVANCING"
    RECYCLED = "RECYCLED"
    DEFENDING = "DEFENDING"
    BENCHED = "BENCHED"
    WINNER = "WINNER"
    ELIMINATED = "ELIMINATED"
    RETIRED = "RETIRED"


class CellStatus(str, enum.Enum):
    DELIBERATING = "DELIBERATING"
    VOTING = "VOTING"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


CLOSED_CELL_STATUSES = (CellStatus.COMPLETED, CellStatus.ABANDONED)


class TierStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class SeatStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    VOTED = "VOTED"


class AllocationMode(str, enum.Enum):
    FCFS = "FCFS"
    BALANCED = "BALANCED"


class VotingMode(str, enum.Enum):
    POINTS = "POINTS"  # 10 divisible points per voter
    PLURALITY = "PLURALITY"  # one indivisible vote per voter


class AdvancementPolicy(str, enum.Enum):
    EXHAUST_QUEUE = "EXHAUST_QUEUE"
    PRIME_GATE = "PRIME_GATE"


class CellOutcome(str, enum.Enum):
    WON = "WON"
    RECYCLED = "RECYCLED"
    ELIMINATED = "ELIMINATED"
