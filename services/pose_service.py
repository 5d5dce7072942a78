import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

import cv2
import numpy as np
from ultralytics import YOLO

from config import config
from models.angle_extractor import LANDMARK_NAMES
from models.schemas import Keypoint, PoseCandidate
from utils.errors import InitializationError
from utils.logging_utils import logger


class PoseModel(ABC):
    """
    Capability interface for a single-person pose estimator.
    One instance is injected per session and is never swapped while it runs.
    """

    @abstractmethod
    async def init(self):
        """Prepare the runtime. Idempotent; raises InitializationError on failure."""

    @abstractmethod
    async def estimate(self, frame: np.ndarray) -> List[PoseCandidate]:
        """Return pose candidates with pixel-space keypoints for a BGR frame"""

    @abstractmethod
    async def dispose(self):
        """Release model resources. Safe to call more than once."""


class YoloPoseService(PoseModel):
    """
    YOLO-based pose detection service.
    Handles model initialization, image preprocessing, and keypoint extraction.
    """

    def __init__(self, weights: Optional[str] = None, conf_threshold: Optional[float] = None):
        self.weights = weights or config.pose_model_weights
        self.conf_threshold = config.model_conf_threshold if conf_threshold is None else conf_threshold
        self.model = None

    async def init(self):
        """
        Initialize YOLO pose detection model and perform warm-up inference.
        Loads the pose weights and runs dummy inference for optimization.
        """
        if self.model is not None:
            return

        logger.info(f"Loading YOLO pose model {self.weights}...")
        try:
            self.model = await asyncio.to_thread(self._load)
        except Exception as e:
            self.model = None
            raise InitializationError(f"Could not load pose model {self.weights}: {e}") from e

        logger.info("Pose model loaded successfully!")

    def _load(self):
        model = YOLO(self.weights)

        # Warm up model with dummy inference to optimize subsequent calls
        dummy = np.zeros((480, 640, 3), dtype=np.uint8)
        _ = model(dummy, verbose=False)
        return model

    async def estimate(self, frame: np.ndarray) -> List[PoseCandidate]:
        if self.model is None:
            raise RuntimeError("Model not initialized")
        return await asyncio.to_thread(self.detect_pose, frame)

    def detect_pose(self, img: np.ndarray) -> List[PoseCandidate]:
        """
        Detect pose keypoints in image with automatic resize for performance.
        Keypoints are returned in the pixel space of the original image.
        """
        height, width = img.shape[:2]
        scale = 1.0
        if width > config.image_width_limit:
            scale = config.image_width_limit / width
            img = cv2.resize(img, (int(width * scale), int(height * scale)))

        results = self.model(img, verbose=False, conf=self.conf_threshold)

        # Single-pose estimation: only the first detected person is used
        if results[0].keypoints is None or len(results[0].keypoints.data) == 0:
            return []

        data = results[0].keypoints.data[0].cpu().numpy()
        keypoints = [
            Keypoint(name=name, x=float(x) / scale, y=float(y) / scale, score=float(conf))
            for name, (x, y, conf) in zip(LANDMARK_NAMES, data)
        ]
        return [PoseCandidate(keypoints=keypoints)]

    async def dispose(self):
        if self.model is not None:
            logger.info("Disposing pose model")
        self.model = None
