import time
from abc import ABC, abstractmethod
from typing import List, Optional

import cv2
import numpy as np

from config import config
from models.schemas import Keypoint
from utils.logging_utils import logger

# COCO skeleton as pairs of keypoint names
SKELETON = [
    ("left_shoulder", "right_shoulder"), ("left_hip", "right_hip"),
    ("left_shoulder", "left_elbow"), ("left_elbow", "left_wrist"),
    ("right_shoulder", "right_elbow"), ("right_elbow", "right_wrist"),
    ("left_shoulder", "left_hip"), ("right_shoulder", "right_hip"),
    ("left_hip", "left_knee"), ("left_knee", "left_ankle"),
    ("right_hip", "right_knee"), ("right_knee", "right_ankle"),
]

CORRECT_COLOR = (0, 255, 0)
INCORRECT_COLOR = (0, 0, 255)


class Renderer(ABC):
    """Write-only drawing contract used by the session loop"""

    @abstractmethod
    def resize(self, width: int, height: int):
        pass

    @abstractmethod
    def render_simple(self, keypoints: List[Keypoint], is_correct: bool):
        """Draw the skeleton, green when the pose is correct and red otherwise"""

    @abstractmethod
    def trigger_celebration(self):
        pass


class OpenCVRenderer(Renderer):
    """
    Skeleton overlay drawn with OpenCV.
    Saves annotated frames to the debug directory when frame saving is enabled.
    """

    def __init__(self, min_score: Optional[float] = None, celebration_frames: int = 30):
        self.min_score = config.visibility_confidence if min_score is None else min_score
        self.celebration_frames = celebration_frames
        self.width = 0
        self.height = 0
        self.canvas: Optional[np.ndarray] = None
        self.frame_count = 0
        self._celebrate_remaining = 0

    def resize(self, width: int, height: int):
        self.width = width
        self.height = height
        self.canvas = np.zeros((height, width, 3), dtype=np.uint8)
        logger.info(f"Renderer resized to {width}x{height}")

    def render_simple(self, keypoints: List[Keypoint], is_correct: bool):
        if self.canvas is None:
            return

        self.frame_count += 1
        self.canvas[:] = 0
        color = CORRECT_COLOR if is_correct else INCORRECT_COLOR
        points = {kp.name: (int(kp.x), int(kp.y)) for kp in keypoints if kp.score >= self.min_score}

        for a, b in SKELETON:
            if a in points and b in points:
                cv2.line(self.canvas, points[a], points[b], color, 4)
        for point in points.values():
            cv2.circle(self.canvas, point, 6, color, -1)

        if self._celebrate_remaining > 0:
            self._celebrate_remaining -= 1
            cv2.putText(self.canvas, "Great job!", (30, 50),
                        cv2.FONT_HERSHEY_TRIPLEX, 1.5, (0, 255, 255), 3)

        if config.save_frames:
            self.save_debug_frame(is_correct)

    def trigger_celebration(self):
        self._celebrate_remaining = self.celebration_frames

    def save_debug_frame(self, is_correct: bool):
        """Save the current overlay to disk with a descriptive filename"""
        if not config.debug_dir or self.canvas is None:
            return

        try:
            timestamp = int(time.time())
            state = "correct" if is_correct else "incorrect"
            filename = f"frame_{self.frame_count:04d}_{state}_{timestamp}.jpg"
            cv2.imwrite(str(config.debug_dir / filename), self.canvas)
            logger.debug(f"Debug frame saved: {filename}")
        except Exception as e:
            logger.error(f"Error saving debug frame: {e}")
