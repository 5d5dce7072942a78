# angle_extractor.py
"""
Joint angle geometry shared by the live counter and the template builder.
Converts pose model keypoints into named landmarks and landmarks into joint angles.
"""

from typing import Dict, Iterable, Optional, Tuple

import numpy as np

from config import config
from models.schemas import AngleMap, Landmark, LandmarkSnapshot, PoseCandidate

# COCO keypoint names in the order the pose model reports them
LANDMARK_NAMES = [
    "nose", "left_eye", "right_eye", "left_ear", "right_ear",
    "left_shoulder", "right_shoulder", "left_elbow", "right_elbow",
    "left_wrist", "right_wrist", "left_hip", "right_hip",
    "left_knee", "right_knee", "left_ankle", "right_ankle",
]

# Joint name -> (point A, vertex, point B)
KEY_ANGLES: Dict[str, Tuple[str, str, str]] = {
    "left_elbow": ("left_shoulder", "left_elbow", "left_wrist"),
    "right_elbow": ("right_shoulder", "right_elbow", "right_wrist"),
    "left_shoulder": ("left_elbow", "left_shoulder", "left_hip"),
    "right_shoulder": ("right_elbow", "right_shoulder", "right_hip"),
    "left_hip": ("left_shoulder", "left_hip", "left_knee"),
    "right_hip": ("right_shoulder", "right_hip", "right_knee"),
    "left_knee": ("left_hip", "left_knee", "left_ankle"),
    "right_knee": ("right_hip", "right_knee", "right_ankle"),
}


def calculate_angle(a: Landmark, vertex: Landmark, b: Landmark) -> int:
    """
    Angle at vertex between the rays towards a and b, in whole degrees [0, 180].
    Symmetric in a and b.
    """
    radians = np.arctan2(b.y - vertex.y, b.x - vertex.x) - np.arctan2(a.y - vertex.y, a.x - vertex.x)
    angle = abs(float(np.degrees(radians)))

    if angle > 180:
        angle = 360 - angle

    # Round half up, independent of float formatting of .5 values
    return int(np.floor(angle + 0.5))


def extract_angles(landmarks: LandmarkSnapshot, min_visibility: Optional[float] = None) -> AngleMap:
    """
    Compute every predefined joint angle whose three landmarks are present and
    visible enough. Joints failing the check are omitted from the result.
    """
    if min_visibility is None:
        min_visibility = config.min_visibility

    angles: AngleMap = {}
    for angle_name, (a_name, vertex_name, b_name) in KEY_ANGLES.items():
        a = landmarks.get(a_name)
        vertex = landmarks.get(vertex_name)
        b = landmarks.get(b_name)
        if a is None or vertex is None or b is None:
            continue
        if min(a.visibility, vertex.visibility, b.visibility) < min_visibility:
            continue
        angles[angle_name] = calculate_angle(a, vertex, b)

    return angles


def candidate_to_landmarks(candidate: PoseCandidate, width: float, height: float) -> LandmarkSnapshot:
    """Normalize a pixel-space pose candidate by frame size into a landmark snapshot"""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid frame size {width}x{height}")

    landmarks: LandmarkSnapshot = {}
    for kp in candidate.keypoints:
        if not kp.name:
            continue
        landmarks[kp.name] = Landmark(x=kp.x / width, y=kp.y / height, visibility=kp.score)
    return landmarks


def count_visible_keypoints(candidate: PoseCandidate, min_confidence: Optional[float] = None) -> int:
    if min_confidence is None:
        min_confidence = config.visibility_confidence
    return sum(1 for kp in candidate.keypoints if kp.score >= min_confidence)


def is_pose_visible(candidate: PoseCandidate,
                    min_confidence: Optional[float] = None,
                    min_count: Optional[int] = None) -> bool:
    """Visibility-only feedback used when no template is available for the exercise"""
    if min_count is None:
        min_count = config.min_visible_landmarks
    return count_visible_keypoints(candidate, min_confidence) >= min_count


def scale_keypoints(keypoints: Iterable, scale_x: float, scale_y: float):
    """Map pixel keypoints from frame space into renderer space"""
    return [kp.model_copy(update={"x": kp.x * scale_x, "y": kp.y * scale_y}) for kp in keypoints]
