import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import cv2
import numpy as np

from config import config
from utils.errors import PermissionDeniedError
from utils.logging_utils import logger


class CaptureStream(ABC):
    """Live frame source acquired for one session"""

    width: int
    height: int

    @abstractmethod
    async def read(self) -> Optional[np.ndarray]:
        """Return the next frame, or None if none is available yet"""

    @abstractmethod
    def stop(self):
        """Stop all tracks. Safe to call more than once."""


class CaptureDevice(ABC):
    @abstractmethod
    async def get_stream(self, constraints: Optional[Dict[str, Any]] = None) -> CaptureStream:
        """Acquire a stream; raises PermissionDeniedError if access is refused"""


class OpenCVCaptureStream(CaptureStream):
    def __init__(self, cap: cv2.VideoCapture):
        self.cap = cap
        self.width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    async def read(self) -> Optional[np.ndarray]:
        if self.cap is None:
            return None
        ret, frame = await asyncio.to_thread(self.cap.read)
        return frame if ret else None

    def stop(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            logger.info("Capture stream stopped")


class OpenCVCaptureDevice(CaptureDevice):
    """Webcam access through OpenCV"""

    def __init__(self, index: Optional[int] = None):
        self.index = config.camera_index if index is None else index

    async def get_stream(self, constraints: Optional[Dict[str, Any]] = None) -> CaptureStream:
        constraints = constraints or {}
        cap = await asyncio.to_thread(cv2.VideoCapture, self.index)
        if not cap.isOpened():
            cap.release()
            raise PermissionDeniedError(f"Camera {self.index} could not be opened")

        if "width" in constraints:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints["width"])
        if "height" in constraints:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints["height"])

        stream = OpenCVCaptureStream(cap)
        logger.info(f"Camera {self.index} opened at {stream.width}x{stream.height}")
        return stream
