# rep_counter.py
"""
Template-driven repetition counter.
Turns the stream of per-frame phase labels into a repetition count by watching
the log of phase transitions for the template's repetition sequence.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from config import config
from utils.logging_utils import logger
from models.schemas import Template


class RepetitionCounter:
    """
    Per-session repetition state machine.

    The state is (last_phase, phase_sequence, rep_counted). A phase is appended
    to the sequence only when it differs from the previous frame's phase, which
    is the only debouncing applied to noisy per-frame classification. When the
    tail of the sequence equals the template's rep sequence a repetition is
    counted, then a cooldown starts. When the cooldown expires the flag is
    cleared and the whole sequence is discarded, so transitions seen during the
    cooldown never contribute to the next repetition.

    Time comes from an injectable clock, so the cooldown is deterministic under test.
    """

    def __init__(self,
                 template: Optional[Template],
                 target_reps: int,
                 cooldown: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_rep: Optional[Callable[[int], None]] = None):
        if target_reps < 0:
            raise ValueError("target_reps must not be negative")

        self.template = template
        self.target_reps = target_reps
        self.cooldown = config.rep_cooldown if cooldown is None else cooldown
        self.clock = clock
        self.on_rep = on_rep

        self.count = 0
        self.frame_count = 0
        self.last_phase: str = ""
        self.phase_sequence: List[str] = []
        self.rep_counted = False
        self._cooldown_until: Optional[float] = None

    @property
    def counting_enabled(self) -> bool:
        """Counting only runs against a loaded template"""
        return self.template is not None

    @property
    def is_complete(self) -> bool:
        return self.count >= self.target_reps

    def tick(self):
        """Expire the post-rep cooldown once its time has passed"""
        if self._cooldown_until is not None and self.clock() >= self._cooldown_until:
            self._cooldown_until = None
            self.rep_counted = False
            self.phase_sequence.clear()
            logger.debug("Rep cooldown expired, phase sequence cleared")

    def update(self, current_phase: Optional[str]) -> bool:
        """
        Feed the phase matched on this frame. Returns True when this frame
        completed a repetition.
        """
        self.frame_count += 1
        self.tick()

        if not self.counting_enabled or not current_phase:
            return False

        if current_phase != self.last_phase:
            self.phase_sequence.append(current_phase)
            self.last_phase = current_phase
            logger.info(f"Phase -> {current_phase} (sequence: {self.phase_sequence})")

        rep_sequence = self.template.rep_sequence
        k = len(rep_sequence)
        if len(self.phase_sequence) < k or self.phase_sequence[-k:] != rep_sequence:
            return False

        if self.rep_counted or self.count >= self.target_reps:
            return False

        self.count += 1
        self.rep_counted = True
        self._cooldown_until = self.clock() + self.cooldown
        logger.info(f"REP #{self.count}/{self.target_reps} completed!")

        if self.on_rep is not None:
            self.on_rep(self.count)
        return True

    def reset(self):
        """Reset counter state to initial values"""
        self.count = 0
        self.frame_count = 0
        self.last_phase = ""
        self.phase_sequence.clear()
        self.rep_counted = False
        self._cooldown_until = None
        logger.info("Repetition counter reset")

    def get_status(self) -> Dict[str, Any]:
        """Get current counter status for debugging"""
        return {
            "count": self.count,
            "target_reps": self.target_reps,
            "frame_count": self.frame_count,
            "last_phase": self.last_phase,
            "phase_sequence": list(self.phase_sequence),
            "rep_counted": self.rep_counted,
            "counting_enabled": self.counting_enabled,
        }
