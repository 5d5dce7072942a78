# schemas.py
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Joint name -> angle in whole degrees. Missing keys mean "not visible enough", never zero.
AngleMap = Dict[str, int]


class Landmark(BaseModel):
    """Named body point normalized to [0, 1] of the frame, with model confidence as visibility"""
    x: float
    y: float
    visibility: float = 1.0


# Landmark name -> Landmark for a single frame
LandmarkSnapshot = Dict[str, Landmark]


class Keypoint(BaseModel):
    """Raw pose model output: pixel-space position and confidence score"""
    name: str
    x: float
    y: float
    score: float = 0.0


class PoseCandidate(BaseModel):
    """One detected person as returned by a pose model"""
    keypoints: List[Keypoint] = Field(default_factory=list)
    score: Optional[float] = None


class Keyframe(BaseModel):
    """Sampled reference-video frame used while building a template"""
    timestamp: float                            # Seconds from the start of the video
    landmarks: LandmarkSnapshot = Field(default_factory=dict)
    angles: AngleMap = Field(default_factory=dict)


class Phase(BaseModel):
    """Representative pose state of a movement, e.g. "start" or "peak" """
    name: str
    angles: AngleMap = Field(default_factory=dict)
    timestamp: float = 0.0


class Template(BaseModel):
    """
    Movement template extracted from a reference video.
    A template with fewer than two phases cannot be used for counting.
    """
    phases: List[Phase]
    rep_sequence: List[str]
    tolerance_degrees: float

    @field_validator("phases")
    @classmethod
    def _at_least_two_phases(cls, phases: List[Phase]) -> List[Phase]:
        if len(phases) < 2:
            raise ValueError(f"template needs at least 2 phases, got {len(phases)}")
        return phases

    @field_validator("rep_sequence")
    @classmethod
    def _non_empty_sequence(cls, rep_sequence: List[str]) -> List[str]:
        if not rep_sequence:
            raise ValueError("rep_sequence must not be empty")
        return rep_sequence

    @field_validator("tolerance_degrees")
    @classmethod
    def _positive_tolerance(cls, tolerance: float) -> float:
        if tolerance <= 0:
            raise ValueError("tolerance_degrees must be positive")
        return tolerance

    @model_validator(mode="after")
    def _sequence_uses_known_phases(self) -> "Template":
        names = {phase.name for phase in self.phases}
        unknown = [name for name in self.rep_sequence if name not in names]
        if unknown:
            raise ValueError(f"rep_sequence references unknown phases: {unknown}")
        return self


class TemplateStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class TemplateRecord(BaseModel):
    """Persisted template row, keyed 1:1 by exercise identity"""
    exercise_id: str
    status: TemplateStatus = TemplateStatus.PROCESSING
    phases: List[Phase] = Field(default_factory=list)
    rep_sequence: Optional[List[str]] = None
    tolerance_degrees: Optional[float] = None
    updated_at: Optional[str] = None


class KeyframeLogEntry(BaseModel):
    """Diagnostic copy of a keyframe stored next to its template"""
    exercise_id: str
    timestamp_seconds: float
    phase_name: str = "extracted"
    angles: AngleMap = Field(default_factory=dict)
    landmarks: LandmarkSnapshot = Field(default_factory=dict)


class PhaseMatch(BaseModel):
    """Best-scoring template phase for one live angle snapshot"""
    phase: Optional[str] = None
    similarity: float = 0.0
    is_match: bool = False


class ExerciseAssignment(BaseModel):
    """An exercise in the patient's plan with its repetition goal"""
    exercise_id: str
    name: Optional[str] = None
    target_reps: int = Field(default=10, ge=1)


class StartSessionRequest(BaseModel):
    exercises: List[ExerciseAssignment]
    index: Optional[int] = None


class WorkoutState(BaseModel):
    """
    Pydantic model representing the session state returned to clients.
    Contains rep progress, the current phase match, user feedback, and lifecycle flags.
    """
    repCount: int = 0                           # Repetitions counted in the current exercise
    targetReps: int = 0                         # Goal for the current exercise
    exerciseId: Optional[str] = None            # Identity of the current exercise
    exerciseIndex: int = 0                      # Position within the assigned exercise list
    totalExercises: int = 0
    phase: Optional[str] = None                 # Last matched template phase
    similarity: float = 0.0                     # Similarity of the last match (0..1)
    isCorrect: bool = False                     # Whether the current pose is drawn as correct
    countingEnabled: bool = False               # False when no usable template is loaded
    motivation: str = "Ready to start!"         # Motivational message for user engagement
    isWorkoutActive: bool = False               # Whether a session is running
    isComplete: bool = False                    # Target reached on the current exercise
    canAdvance: bool = False                    # Whether next() may move past the current exercise
    isFinished: bool = False                    # Advanced past the final exercise
    errorMessage: Optional[str] = None          # Error details if the session failed
    framesProcessed: int = 0                    # Frames that went through the detection loop
    lastRepAt: int = 0                          # Timestamp of last completed repetition (milliseconds)
