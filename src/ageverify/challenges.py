"""
Liveness challenge sequencing.

Sequences are drawn from a fixed alphabet of gestures by rejection sampling
under two constraints: no kind appears more than twice, and no kind follows
itself. When the constraints leave no candidate at a position they are relaxed
in order (occurrence cap first, then everything) so generation always
terminates.
"""

import random
from collections import Counter
from typing import Iterable, Iterator, List, Optional, Sequence

import structlog

from .constants import (
    DEFAULT_CHALLENGE_COUNT,
    MAX_KIND_OCCURRENCES,
    SEQUENCED_CHALLENGE_KINDS,
)
from .data_models import ChallengeKind, ChallengeSpec

# Initialize structured logger
logger = structlog.get_logger(__name__)

AVAILABLE_KINDS: List[ChallengeKind] = [
    ChallengeKind(kind) for kind in SEQUENCED_CHALLENGE_KINDS
]


def generate_challenge_sequence(
    length: int = DEFAULT_CHALLENGE_COUNT,
    rng: Optional[random.Random] = None,
    kinds: Sequence[ChallengeKind] = AVAILABLE_KINDS,
) -> List[ChallengeSpec]:
    """
    Generate a constrained random challenge sequence.

    Parameters
    ----------
    length : int, default=5
        Number of challenges.
    rng : random.Random, optional
        Source of randomness. Pass a seeded instance for reproducible output.
    kinds : Sequence[ChallengeKind]
        Alphabet to draw from.

    Returns
    -------
    List[ChallengeSpec]
        The generated challenges in order.

    Examples
    --------
    >>> sequence = generate_challenge_sequence(5, random.Random(7))
    >>> len(sequence)
    5
    """
    if length < 0:
        raise ValueError(f"length cannot be negative, got {length}")
    if not kinds:
        raise ValueError("kinds cannot be empty")

    rng = rng or random.Random()
    sequence: List[ChallengeKind] = []
    counts: Counter = Counter()

    for i in range(length):
        previous = sequence[i - 1] if i > 0 else None

        candidates = [
            k for k in kinds if counts[k] < MAX_KIND_OCCURRENCES and k != previous
        ]

        if not candidates:
            candidates = [k for k in kinds if k != previous]

        if not candidates:
            candidates = list(kinds)

        choice = rng.choice(candidates)
        sequence.append(choice)
        counts[choice] += 1

    return [ChallengeSpec(kind) for kind in sequence]


class ChallengeQueue:
    """
    Append-only challenge queue for one session.

    The planned length is fixed at construction; a single penalty challenge
    may be appended after the first failure in the session.

    Parameters
    ----------
    challenges : Iterable[ChallengeSpec]
        Initial queue contents.
    rng : random.Random, optional
        Randomness used to draw the penalty challenge.
    """

    def __init__(
        self, challenges: Iterable[ChallengeSpec], rng: Optional[random.Random] = None
    ) -> None:
        self._items: List[ChallengeSpec] = list(challenges)
        self._rng = rng or random.Random()
        self.planned_length = len(self._items)
        self.penalty_added = False

    @classmethod
    def generate(
        cls, length: int = DEFAULT_CHALLENGE_COUNT, rng: Optional[random.Random] = None
    ) -> "ChallengeQueue":
        rng = rng or random.Random()
        return cls(generate_challenge_sequence(length, rng), rng)

    @classmethod
    def from_kinds(
        cls, kinds: Iterable[str], rng: Optional[random.Random] = None
    ) -> "ChallengeQueue":
        return cls([ChallengeSpec(ChallengeKind(k)) for k in kinds], rng)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> ChallengeSpec:
        return self._items[index]

    def __iter__(self) -> Iterator[ChallengeSpec]:
        return iter(list(self._items))

    @property
    def kinds(self) -> List[ChallengeKind]:
        return [c.kind for c in self._items]

    def append_penalty(self) -> Optional[ChallengeSpec]:
        """
        Append one freshly sequenced challenge, at most once per session.

        Returns
        -------
        Optional[ChallengeSpec]
            The appended challenge, or None if a penalty was already added.
        """
        if self.penalty_added:
            return None

        penalty = generate_challenge_sequence(1, self._rng)[0]
        self._items.append(penalty)
        self.penalty_added = True

        logger.info(
            "Penalty challenge appended",
            penalty=penalty.kind.value,
            queue_length=len(self._items),
            planned_length=self.planned_length,
        )
        return penalty
