# phase_matcher.py
"""
Scores a live angle snapshot against every phase of a movement template.
Pure functions only, so one template can be matched from any number of sessions.
"""

from typing import Optional, Tuple

from config import config
from models.schemas import AngleMap, Phase, PhaseMatch, Template


def phase_similarity(user_angles: AngleMap, phase: Phase, tolerance: float) -> Tuple[int, int]:
    """
    Count the phase's angles that the user also has (total) and how many of
    those fall within tolerance (matching).
    """
    total = 0
    matching = 0
    for angle_name, target in phase.angles.items():
        user_angle = user_angles.get(angle_name)
        if user_angle is None:
            continue
        total += 1
        if abs(user_angle - target) <= tolerance:
            matching += 1
    return matching, total


def match_pose_to_phase(user_angles: AngleMap,
                        template: Template,
                        threshold: Optional[float] = None) -> PhaseMatch:
    """
    Find the template phase the user's pose resembles most.

    Similarity is the fraction of a phase's shared angles that lie within the
    template tolerance. Only a strictly greater similarity replaces the current
    best, so on exact ties the phase listed first in the template wins. A
    similarity of 0 everywhere yields no phase.
    """
    if threshold is None:
        threshold = config.match_threshold

    best_phase = None
    best_similarity = 0.0

    for phase in template.phases:
        matching, total = phase_similarity(user_angles, phase, template.tolerance_degrees)
        similarity = matching / total if total > 0 else 0.0

        if similarity > best_similarity:
            best_similarity = similarity
            best_phase = phase.name

    return PhaseMatch(
        phase=best_phase,
        similarity=best_similarity,
        is_match=best_similarity >= threshold
    )
