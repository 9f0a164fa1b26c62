"""
Trust Engine - per-agent reliability scores

Trust and pathway strength are separate quantities. Strength tracks the
health of one relationship; trust tracks an agent across all of its
connections and moves in much smaller steps, so one bad pathway cannot sink
an otherwise reliable agent.

Idle scores decay exponentially toward neutral (0.5):

    score(t) = neutral + (score - neutral) * 0.5 ** (idle / half_life)
"""
import logging
import threading
import time
from typing import Callable, Optional

from .errors import InvalidRangeError
from .graph import PathwayGraph
from .models import Outcome, require_unit_number
from .settings import MeshSettings

logger = logging.getLogger(__name__)


class TrustEngine:
    """Sole writer of agent trust scores (apart from administrative override)."""

    def __init__(
        self,
        graph: PathwayGraph,
        settings: Optional[MeshSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.graph = graph
        self.settings = settings or graph.settings
        self._clock = clock
        self._last_activity: dict[str, float] = {}
        self._lock = threading.Lock()

    def track(self, agent_id: str, at: Optional[float] = None) -> None:
        """Start the idle clock for a newly registered agent."""
        self.graph.get_agent(agent_id)
        with self._lock:
            self._last_activity.setdefault(agent_id, self._clock() if at is None else at)

    def last_activity(self, agent_id: str) -> Optional[float]:
        return self._last_activity.get(agent_id)

    def _decayed(self, score: float, idle_seconds: float) -> float:
        half_life = self.settings.trust_half_life_seconds
        if idle_seconds <= 0 or half_life <= 0:
            return score
        neutral = self.settings.trust_neutral
        return neutral + (score - neutral) * 0.5 ** (idle_seconds / half_life)

    def on_pathway_outcome(self, agent_id: str, outcome: Outcome) -> float:
        """Decay for idle time, then apply a small bounded step for the outcome."""
        agent = self.graph.get_agent(agent_id)
        outcome = Outcome(outcome)
        with self._lock:
            now = self._clock()
            last = self._last_activity.get(agent_id, now)
            score = self._decayed(agent.trust_score, now - last)
            if outcome == Outcome.SUCCESS:
                score = min(1.0, score + self.settings.trust_success_delta)
            else:
                score = max(0.0, score - self.settings.trust_failure_delta)
            self.graph.set_trust_score(agent_id, score)
            self._last_activity[agent_id] = now
        logger.debug(f"Trust {agent_id}: {outcome.value} -> {score:.4f}")
        return score

    def decay(self, agent_id: str, now: Optional[float] = None) -> float:
        """
        Apply idle decay up to `now` and restart the idle clock.

        Decay composes (decaying over t1 then t2 equals decaying over t1 + t2),
        so it is safe to apply on every read.
        """
        agent = self.graph.get_agent(agent_id)
        with self._lock:
            now = self._clock() if now is None else now
            last = self._last_activity.get(agent_id, now)
            if now <= last:
                return agent.trust_score
            score = self._decayed(agent.trust_score, now - last)
            self.graph.set_trust_score(agent_id, score, touch=False)
            self._last_activity[agent_id] = now
        return score

    def decay_all(self, now: Optional[float] = None) -> dict[str, float]:
        now = self._clock() if now is None else now
        scores = {agent.id: self.decay(agent.id, now) for agent in self.graph.agents()}
        logger.debug(f"Trust decay applied to {len(scores)} agents")
        return scores

    def forget(self, agent_id: str) -> None:
        """Drop the idle clock of a removed agent."""
        with self._lock:
            self._last_activity.pop(agent_id, None)

    def override(self, agent_id: str, score) -> float:
        """Administrative override; out-of-range values are rejected, not clamped."""
        value = require_unit_number("trust_score", score)
        if not 0.0 <= value <= 1.0:
            raise InvalidRangeError("trust_score", score)
        self.graph.get_agent(agent_id)
        with self._lock:
            self.graph.set_trust_score(agent_id, value)
            self._last_activity[agent_id] = self._clock()
        logger.warning(f"Trust override for {agent_id}: {value:.4f}")
        return value
