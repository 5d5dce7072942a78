# template_builder.py
"""
Offline template extraction from a reference exercise video.

The video is sampled at a bounded number of evenly spaced timestamps, the pose
model runs on every sample, and the two extreme poses of the most moving joint
become the "start" and "peak" phases of the template.
"""

import asyncio
import math
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import cv2
import numpy as np

from config import config
from utils.errors import TemplateExtractionError
from utils.logging_utils import logger
from models.angle_extractor import candidate_to_landmarks, extract_angles
from models.schemas import Keyframe, Phase, Template


class VideoSource(ABC):
    """Seekable decoded video, as seen by the template builder"""

    duration_ms: float
    width: int
    height: int

    @abstractmethod
    async def seek(self, position_ms: float) -> Optional[np.ndarray]:
        """Seek to position_ms and return the decoded frame there, or None"""

    def close(self):
        return None


class OpenCVVideoSource(VideoSource):
    """
    Reference video decoded with OpenCV.

    A seek that timed out keeps running in its worker thread, so every use of
    the capture object goes through one lock.
    """

    def __init__(self, path: str, capture=None):
        self.path = path
        self.cap = capture if capture is not None else cv2.VideoCapture(path)
        self._lock = threading.Lock()
        if not self.cap.isOpened():
            raise TemplateExtractionError(f"Could not open video {path}")

        fps = self.cap.get(cv2.CAP_PROP_FPS) or 0
        frame_count = self.cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0
        self.duration_ms = (frame_count / fps) * 1000 if fps > 0 else 0.0
        self.width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    def _read_at(self, position_ms: float) -> Optional[np.ndarray]:
        with self._lock:
            if self.cap is None:
                return None
            self.cap.set(cv2.CAP_PROP_POS_MSEC, position_ms)
            ret, frame = self.cap.read()
            return frame if ret else None

    async def seek(self, position_ms: float) -> Optional[np.ndarray]:
        return await asyncio.to_thread(self._read_at, position_ms)

    def close(self):
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None


def sampling_plan(duration_ms: float,
                  desired_interval_ms: float,
                  max_samples: Optional[int] = None) -> Tuple[float, int]:
    """
    Spread at most max_samples samples over the video. Returns
    (actual_interval_ms, num_samples); positions i * interval for
    i in 0..num_samples inclusive are visited.
    """
    if max_samples is None:
        max_samples = config.max_template_samples
    if desired_interval_ms <= 0:
        raise ValueError("Sampling interval must be positive")

    actual_interval = max(desired_interval_ms, duration_ms / max_samples)
    num_samples = min(max_samples, math.floor(duration_ms / actual_interval))
    return actual_interval, num_samples


def identify_phases(keyframes: List[Keyframe]) -> List[Phase]:
    """
    Pick the "start" and "peak" phases from the sampled keyframes.

    The primary angle is the joint (among those seen in the first keyframe)
    with the widest range across keyframes; the first joint wins ties. The
    keyframes holding its minimum and maximum (earliest on ties) become the two
    phases, and whichever of them comes first in the video is "start".
    """
    if not keyframes:
        return []

    first = keyframes[0]
    angle_names = list(first.angles.keys())
    primary_angle = angle_names[0] if angle_names else "left_elbow"
    max_range = 0

    for angle_name in angle_names:
        values = [kf.angles[angle_name] for kf in keyframes if angle_name in kf.angles]
        if not values:
            continue
        value_range = max(values) - min(values)
        if value_range > max_range:
            max_range = value_range
            primary_angle = angle_name

    min_frame = first
    max_frame = first
    min_angle = first.angles.get(primary_angle, 180)
    max_angle = first.angles.get(primary_angle, 0)

    for kf in keyframes:
        angle = kf.angles.get(primary_angle)
        if angle is None:
            continue
        if angle < min_angle:
            min_angle = angle
            min_frame = kf
        if angle > max_angle:
            max_angle = angle
            max_frame = kf

    if min_frame.timestamp < max_frame.timestamp:
        start_frame, peak_frame = min_frame, max_frame
    else:
        start_frame, peak_frame = max_frame, min_frame

    logger.info(
        f"Primary angle {primary_angle} ranges {min_angle}-{max_angle}; "
        f"start at {start_frame.timestamp:.2f}s, peak at {peak_frame.timestamp:.2f}s"
    )

    return [
        Phase(name="start", angles=dict(start_frame.angles), timestamp=start_frame.timestamp),
        Phase(name="peak", angles=dict(peak_frame.angles), timestamp=peak_frame.timestamp),
    ]


def build_template(keyframes: List[Keyframe]) -> Optional[Template]:
    """Assemble a template from keyframes; None when fewer than two were collected"""
    if len(keyframes) < 2:
        logger.error(f"Not enough keyframes extracted ({len(keyframes)})")
        return None

    return Template(
        phases=identify_phases(keyframes),
        rep_sequence=list(config.default_rep_sequence),
        tolerance_degrees=config.default_tolerance_degrees
    )


class TemplateBuilder:
    """
    Samples a reference video through a pose model and derives a movement template.
    The caller owns the pose model's lifecycle.
    """

    def __init__(self, pose_model,
                 settle_delay: Optional[float] = None,
                 seek_timeout: Optional[float] = None,
                 max_samples: Optional[int] = None):
        self.pose_model = pose_model
        self.settle_delay = config.seek_settle_delay if settle_delay is None else settle_delay
        self.seek_timeout = config.seek_timeout if seek_timeout is None else seek_timeout
        self.max_samples = config.max_template_samples if max_samples is None else max_samples

    async def collect_keyframes(self, video: VideoSource, sample_interval_ms: Optional[float] = None) -> List[Keyframe]:
        if sample_interval_ms is None:
            sample_interval_ms = config.default_sample_interval_ms

        interval, num_samples = sampling_plan(video.duration_ms, sample_interval_ms, self.max_samples)
        logger.info(
            f"Sampling {num_samples} frames from {video.duration_ms / 1000:.1f}s video "
            f"(every {interval / 1000:.1f}s)"
        )

        keyframes: List[Keyframe] = []
        for i in range(num_samples + 1):
            position_ms = i * interval
            timestamp = position_ms / 1000

            try:
                frame = await asyncio.wait_for(video.seek(position_ms), timeout=self.seek_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Seek to {timestamp:.2f}s timed out, skipping sample")
                continue

            if frame is None:
                logger.warning(f"No frame decoded at {timestamp:.2f}s, skipping sample")
                continue

            # Let the decoded frame settle before estimation
            await asyncio.sleep(self.settle_delay)

            try:
                candidates = await self.pose_model.estimate(frame)
            except Exception as e:
                logger.warning(f"Failed to extract pose at {timestamp:.2f}s: {e}")
                continue

            if not candidates or not candidates[0].keypoints:
                logger.info(f"No pose detected at {timestamp:.2f}s")
                continue

            landmarks = candidate_to_landmarks(candidates[0], video.width, video.height)
            keyframes.append(Keyframe(
                timestamp=timestamp,
                landmarks=landmarks,
                angles=extract_angles(landmarks)
            ))

        logger.info(f"Collected {len(keyframes)} keyframes")
        return keyframes

    async def build(self, video: VideoSource,
                    sample_interval_ms: Optional[float] = None) -> Tuple[Template, List[Keyframe]]:
        """
        Extract a template from the video.
        Raises TemplateExtractionError when fewer than two keyframes are usable.
        """
        keyframes = await self.collect_keyframes(video, sample_interval_ms)
        template = build_template(keyframes)
        if template is None:
            raise TemplateExtractionError(
                f"Only {len(keyframes)} usable keyframes, at least 2 are required"
            )
        return template, keyframes
