"""
Expert Evaluator - Face Verification
Thin wrapper over the `face_recognition` (dlib) models.

Nothing here detects or embeds faces itself: we decode the frame, hand it to
face_recognition for locations + 128-d descriptors, and compare descriptors
by Euclidean distance.
"""

import base64
import binascii
import io
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

FACE_MATCH_THRESHOLD = float(os.getenv("FACE_MATCH_THRESHOLD", "0.6"))
FACE_DETECTION_MODEL = os.getenv("FACE_DETECTION_MODEL", "hog")   # hog | cnn
DESCRIPTOR_LENGTH    = 128


class FaceModelUnavailable(RuntimeError):
    """The face-recognition models could not be loaded. Terminal."""


class FaceDetectionError(ValueError):
    """A frame did not contain exactly the faces required."""


@dataclass
class FaceDetection:
    location: Tuple[int, int, int, int]    # top, right, bottom, left
    descriptor: List[float]


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError(f"Descriptor length mismatch: {va.shape} vs {vb.shape}")
    return float(np.linalg.norm(va - vb))


def decode_image(data: Union[bytes, str]) -> np.ndarray:
    """
    Decode JPEG/PNG bytes, or a base64 string (optionally a data: URL),
    into an RGB uint8 array.
    """
    if isinstance(data, str):
        if data.startswith("data:"):
            data = data.split(",", 1)[-1]
        try:
            data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FaceDetectionError("Frame is not valid base64") from e
    try:
        img = Image.open(io.BytesIO(data))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise FaceDetectionError("Frame is not a readable image") from e
    return np.array(img)


def validate_descriptor(descriptor: Sequence[float]) -> List[float]:
    values = [float(v) for v in descriptor]
    if len(values) != DESCRIPTOR_LENGTH:
        raise FaceDetectionError(f"Face descriptor must have {DESCRIPTOR_LENGTH} values, got {len(values)}")
    if not all(np.isfinite(values)):
        raise FaceDetectionError("Face descriptor contains non-finite values")
    return values


class FaceVerifier:
    """
    Loads face_recognition lazily (the dlib models are heavy).
    A load failure is cached and re-raised as FaceModelUnavailable.
    """

    def __init__(self, model: Optional[str] = None):
        self.model = model or FACE_DETECTION_MODEL
        self._lib = None
        self._load_error: Optional[str] = None

    def load(self):
        if self._lib is not None:
            return self._lib
        if self._load_error is not None:
            raise FaceModelUnavailable(self._load_error)
        try:
            import face_recognition
        except Exception as e:     # ImportError, or dlib failing to load its models
            self._load_error = f"Failed to load verification models: {e}"
            logger.error(self._load_error)
            raise FaceModelUnavailable(self._load_error) from e
        self._lib = face_recognition
        logger.info("✅ face_recognition models ready (detector=%s)", self.model)
        return self._lib

    @property
    def available(self) -> bool:
        try:
            self.load()
            return True
        except FaceModelUnavailable:
            return False

    # ─────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────

    def detect(self, frame: np.ndarray) -> List[FaceDetection]:
        lib = self.load()
        boxes = lib.face_locations(frame, model=self.model)
        if not boxes:
            return []
        encodings = lib.face_encodings(frame, known_face_locations=boxes)
        return [
            FaceDetection(location=tuple(box), descriptor=[float(v) for v in enc])
            for box, enc in zip(boxes, encodings)
        ]

    def describe_single(self, frame: np.ndarray) -> List[float]:
        """Descriptor of the one face in frame, used at registration."""
        detections = self.detect(frame)
        if not detections:
            raise FaceDetectionError("No face detected. Please ensure your face is clearly visible.")
        if len(detections) > 1:
            raise FaceDetectionError("Multiple faces detected! Only one person allowed.")
        return detections[0].descriptor

    def describe_image(self, data: Union[bytes, str]) -> List[float]:
        return self.describe_single(decode_image(data))
