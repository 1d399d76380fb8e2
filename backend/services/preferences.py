import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class SwipeDirection(str, Enum):
    LIKED = "liked"
    DISLIKED = "disliked"

    @classmethod
    def parse(cls, value: Union[str, "SwipeDirection", bool]) -> "SwipeDirection":
        """Accepts enum members, booleans (True = liked) and loose strings ("like", "right", "unlike")."""
        if isinstance(value, SwipeDirection):
            return value
        if isinstance(value, bool):
            return cls.LIKED if value else cls.DISLIKED
        text = str(value).strip().lower()
        if text in ("liked", "like", "right", "yes", "love", "1", "true"):
            return cls.LIKED
        if text in ("disliked", "dislike", "unlike", "unliked", "left", "no", "0", "false"):
            return cls.DISLIKED
        raise ValueError(f"Unknown swipe direction: {value!r}")


@dataclass(frozen=True)
class SwipeOutcome:
    image_id: str
    direction: SwipeDirection
    analysis_text: Optional[str] = None


@dataclass(frozen=True)
class EvaluationResult:
    direction: SwipeDirection
    analysis_text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "analysis_text": self.analysis_text,
            "timestamp": self.timestamp.isoformat(),
        }


SwipeMapping = Mapping[Any, Union[SwipeOutcome, Tuple[Any, Optional[str]]]]


def _iter_swipes(swipes: Union[SwipeMapping, Iterable[SwipeOutcome], None]):
    if not swipes:
        return
    if isinstance(swipes, Mapping):
        for image_id, value in swipes.items():
            if isinstance(value, SwipeOutcome):
                yield value
            else:
                direction, description = value
                yield SwipeOutcome(str(image_id), SwipeDirection.parse(direction), description)
        return
    for outcome in swipes:
        yield outcome


def extract_liked_descriptions(
    swipes: Union[SwipeMapping, Iterable[SwipeOutcome], None] = None,
    evaluations: Optional[Iterable[EvaluationResult]] = None,
) -> List[str]:
    """
    Collect the description / analysis text of every liked entry.

    `swipes` may be a mapping of image id -> (direction, description) or SwipeOutcome,
    or a plain iterable of SwipeOutcome. Entries without usable text are skipped.
    No likes yields an empty list; callers fall back to a generic prompt.
    """
    liked: List[str] = []
    for outcome in _iter_swipes(swipes):
        if outcome.direction == SwipeDirection.LIKED and outcome.analysis_text and outcome.analysis_text.strip():
            liked.append(outcome.analysis_text.strip())
    for evaluation in evaluations or ():
        if evaluation.direction == SwipeDirection.LIKED and evaluation.analysis_text.strip():
            liked.append(evaluation.analysis_text.strip())
    return liked


class EvaluationSession:
    """
    Swipe outcomes and evaluation history for the current image batch.
    Only the owner (the request handlers on the event loop) mutates it.
    """

    def __init__(self):
        self._swipes: dict = {}
        self._evaluations: List[EvaluationResult] = []

    @property
    def evaluations(self) -> List[EvaluationResult]:
        return list(self._evaluations)

    @property
    def swipes(self) -> List[SwipeOutcome]:
        return list(self._swipes.values())

    def record_swipe(self, outcome: SwipeOutcome) -> None:
        self._swipes[outcome.image_id] = outcome

    def record_evaluation(self, result: EvaluationResult) -> EvaluationResult:
        # Keep history timestamps non-decreasing even if the wall clock steps back.
        if self._evaluations and result.timestamp < self._evaluations[-1].timestamp:
            result = EvaluationResult(
                direction=result.direction,
                analysis_text=result.analysis_text,
                timestamp=self._evaluations[-1].timestamp,
                id=result.id,
            )
        self._evaluations.append(result)
        return result

    def liked_descriptions(self) -> List[str]:
        return extract_liked_descriptions(self._swipes, self._evaluations)

    def reset(self) -> None:
        logger.info(f"Clearing evaluation session ({len(self._evaluations)} evaluations, {len(self._swipes)} swipes)")
        self._swipes.clear()
        self._evaluations.clear()
