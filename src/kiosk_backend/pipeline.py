"""
Identity Resolution Pipeline
============================
Turns one capture (still image + form name/email) into one attendance
decision.

Flow:
1. Decode the capture (unreadable -> rejected)
2. Face descriptor match (threshold 0.6)
3. Image embedding match (threshold 0.75)
4. Raw pixel match against every profile's last image (threshold 0.8)
5. Email match (case-insensitive)
6. Otherwise enroll a new attendee
7. Toggle presence: OUT -> ENTRY, IN -> EXIT (new attendees always ENTRY)
8. EXIT only: compare with today's ENTRY image (below 0.7 -> rejected)
9. Write the record, then the profile
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from .database.attendance_store import AttendanceStore
from .database.blob_store import SqlBlobStore
from .database.db_manager import DatabaseManager
from .database.models import (
    AttendanceRecord,
    AttendeeProfile,
    EntryType,
    PresenceStatus,
    VectorKind,
)
from .recognition.extractors import FeatureExtractor
from .recognition.matching import (
    BIOMETRIC_MATCH_THRESHOLD,
    CHECKOUT_MATCH_THRESHOLD,
    EMBEDDING_MATCH_THRESHOLD,
    NO_MATCH,
    PIXEL_MATCH_THRESHOLD,
    MatchEngine,
    MatchResult,
    biometric_engine,
    embedding_engine,
)
from .recognition.similarity import (
    PIXEL_COMPARE_SIZE,
    ImageDecodeError,
    ImageInput,
    decode_image,
    encode_data_url,
    load_pixels,
    pixel_array_confidence,
    to_pixels,
)

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    AWAITING_CAPTURE = "AWAITING_CAPTURE"
    RESOLVING = "RESOLVING"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


class RejectionReason(str, Enum):
    CHECKOUT_MISMATCH = "CHECKOUT_MISMATCH"
    IMAGE_DECODE_FAILED = "IMAGE_DECODE_FAILED"
    ERROR = "ERROR"


class MatchMethod(str, Enum):
    BIOMETRIC = "biometric"
    EMBEDDING = "embedding"
    PIXEL = "pixel"
    EMAIL = "email"
    NEW = "new"


class ResolutionResult:
    """
    Outcome of one pipeline run.
    Provides a structured response for API endpoints.
    """

    def __init__(
        self,
        success: bool,
        status: PipelineState,
        message: str,
        reason: Optional[RejectionReason] = None,
        entry_type: Optional[EntryType] = None,
        match_method: Optional[MatchMethod] = None,
        confidence: float = 0.0,
        is_new_attendee: bool = False,
        face_detected: bool = False,
        record: Optional[AttendanceRecord] = None,
        profile: Optional[AttendeeProfile] = None
    ):
        self.success = success
        self.status = status
        self.message = message
        self.reason = reason
        self.entry_type = entry_type
        self.match_method = match_method
        self.confidence = confidence
        self.is_new_attendee = is_new_attendee
        self.face_detected = face_detected
        self.record = record
        self.profile = profile

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
            "face_detected": self.face_detected
        }

        if self.reason:
            result["reason"] = self.reason.value
        if self.entry_type:
            result["entry_type"] = self.entry_type.value
        if self.match_method:
            result["match_method"] = self.match_method.value
            result["confidence"] = round(self.confidence, 4)
            result["is_new_attendee"] = self.is_new_attendee
        if self.record:
            result["record"] = self.record.model_dump(
                mode="json", exclude={"image", "biometric_vector", "embedding_vector"}
            )
        if self.profile:
            result["profile"] = self.profile.model_dump(
                mode="json", exclude={"last_image", "biometric_vector", "embedding_vector"}
            )

        return result

    def __repr__(self):
        return f"<ResolutionResult(status={self.status.value}, reason={self.reason}, message={self.message})>"


class IdentityResolutionPipeline:
    """
    Decides who is at the kiosk and whether they are checking in or out.

    Runs are serialized: a second capture waits for the one in progress.
    Nothing is written until the whole decision, including the checkout
    check, has succeeded.

    Usage:
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces)
        result = await pipeline.process_capture(image, name="Ann", email="ann@x.com")
    """

    def __init__(
        self,
        store: AttendanceStore,
        face_extractor: Optional[FeatureExtractor] = None,
        embedding_extractor: Optional[FeatureExtractor] = None,
        biometric_threshold: float = BIOMETRIC_MATCH_THRESHOLD,
        embedding_threshold: float = EMBEDDING_MATCH_THRESHOLD,
        pixel_threshold: float = PIXEL_MATCH_THRESHOLD,
        checkout_threshold: float = CHECKOUT_MATCH_THRESHOLD,
        pixel_size: int = PIXEL_COMPARE_SIZE
    ):
        self.store = store
        self.face_extractor = face_extractor
        self.embedding_extractor = embedding_extractor
        self.biometric_matcher = biometric_engine(biometric_threshold)
        self.embedding_matcher = embedding_engine(embedding_threshold)
        self.pixel_matcher = MatchEngine("pixel", self._compare_to_stored, pixel_threshold)
        self.checkout_threshold = checkout_threshold
        self.pixel_size = pixel_size

        self.state = PipelineState.AWAITING_CAPTURE
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        db_manager: DatabaseManager,
        store: Optional[AttendanceStore] = None,
        face_extractor: Optional[FeatureExtractor] = None,
        embedding_extractor: Optional[FeatureExtractor] = None
    ) -> "IdentityResolutionPipeline":
        """Build a pipeline with thresholds read from the system_config table."""
        pipeline = cls(
            store=store or AttendanceStore(SqlBlobStore(db_manager)),
            face_extractor=face_extractor,
            embedding_extractor=embedding_extractor,
            biometric_threshold=db_manager.get_config_float("biometric_match_threshold", BIOMETRIC_MATCH_THRESHOLD),
            embedding_threshold=db_manager.get_config_float("embedding_match_threshold", EMBEDDING_MATCH_THRESHOLD),
            pixel_threshold=db_manager.get_config_float("pixel_match_threshold", PIXEL_MATCH_THRESHOLD),
            checkout_threshold=db_manager.get_config_float("checkout_match_threshold", CHECKOUT_MATCH_THRESHOLD),
            pixel_size=db_manager.get_config_int("pixel_compare_size", PIXEL_COMPARE_SIZE)
        )
        logger.debug(
            f"Pipeline config: biometric={pipeline.biometric_matcher.threshold}, "
            f"embedding={pipeline.embedding_matcher.threshold}, pixel={pipeline.pixel_matcher.threshold}, "
            f"checkout={pipeline.checkout_threshold}"
        )
        return pipeline

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def process_capture(self, image: ImageInput, name: str, email: str) -> ResolutionResult:
        """
        Resolve one capture into a check-in, a check-out or a rejection.

        Never raises: unexpected failures come back as a REJECTED result
        with reason ERROR.
        """
        async with self._lock:
            self.state = PipelineState.RESOLVING
            logger.info(f"[PIPELINE] Processing capture for {name} <{email}>")

            try:
                result = await self._resolve(image, name, email)
            except Exception as e:
                logger.error(f"[PIPELINE] ERROR: {e}", exc_info=True)
                result = self._reject(RejectionReason.ERROR, f"Failed to process attendance: {e}")

            self.state = PipelineState.RESOLVED if result.success else PipelineState.REJECTED
            logger.info(f"[PIPELINE] {self.state.value}: {result.message}")
            return result

    # ============== Stages ==============

    async def _resolve(self, image: ImageInput, name: str, email: str) -> ResolutionResult:
        if isinstance(image, (bytes, bytearray)):
            image = encode_data_url(bytes(image))

        # Step 1: Decode the capture once; extractors and pixel stages reuse it
        try:
            capture_rgb, capture_pixels = await asyncio.to_thread(self._decode_capture, image)
        except ImageDecodeError as e:
            logger.warning(f"[PIPELINE] Capture could not be decoded: {e}")
            return self._reject(RejectionReason.IMAGE_DECODE_FAILED, "Failed to process the captured image")

        match: MatchResult = NO_MATCH
        method: Optional[MatchMethod] = None

        # Step 2: Face descriptor
        biometric_vector = await self._extract(self.face_extractor, capture_rgb)
        if biometric_vector is not None:
            catalog = self.store.get_vector_catalog(VectorKind.BIOMETRIC)
            match = self.biometric_matcher.find_best_match(biometric_vector, catalog)
            if match.is_match:
                method = MatchMethod.BIOMETRIC

        # Step 3: Image embedding
        embedding_vector = None
        if not match.is_match:
            embedding_vector = await self._extract(self.embedding_extractor, capture_rgb)
            if embedding_vector is not None:
                catalog = self.store.get_vector_catalog(VectorKind.EMBEDDING)
                match = self.embedding_matcher.find_best_match(embedding_vector, catalog)
                if match.is_match:
                    method = MatchMethod.EMBEDDING

        # Step 4: Raw pixels against every stored image
        if not match.is_match and self.store.profiles:
            catalog = self.store.get_image_catalog()
            match = await asyncio.to_thread(self.pixel_matcher.find_best_match, capture_pixels, catalog)
            if match.is_match:
                method = MatchMethod.PIXEL

        profile = self.store.get_profile(match.attendee_id) if match.is_match else None

        # Step 5: Email
        if profile is None:
            profile = self.store.find_profile_by_email(email)
            if profile is not None:
                method = MatchMethod.EMAIL
                logger.info(f"[PIPELINE] Matched {profile.id} by email")

        # Step 6: New attendee
        is_new = profile is None
        if is_new:
            method = MatchMethod.NEW
            attendee_id = str(uuid.uuid4())
            entry_type = EntryType.ENTRY
            record_name, record_email = name, email
        else:
            attendee_id = profile.id
            entry_type = EntryType.ENTRY if profile.current_status == PresenceStatus.OUT else EntryType.EXIT
            record_name, record_email = profile.name or name, profile.email or email

        confidence = match.confidence if match.is_match else 0.0

        # Step 7: Checkout must look like today's check-in
        if entry_type == EntryType.EXIT:
            entry_record = self.store.get_today_entry_record(attendee_id)
            if entry_record is not None:
                gate_confidence = await asyncio.to_thread(self._compare_to_stored, capture_pixels, entry_record.image)
                logger.info(
                    f"[PIPELINE] Checkout check for {attendee_id}: {gate_confidence:.3f} "
                    f"(needs {self.checkout_threshold})"
                )
                if gate_confidence < self.checkout_threshold:
                    return self._reject(
                        RejectionReason.CHECKOUT_MISMATCH,
                        "Checkout photo does not match today's check-in. Please retake the photo.",
                        entry_type=entry_type,
                        match_method=method,
                        confidence=confidence,
                        face_detected=biometric_vector is not None
                    )

        # Step 8: Persist record, then profile
        record = self.store.add_record(
            attendee_id=attendee_id,
            name=record_name,
            email=record_email,
            image=image,
            type=entry_type,
            biometric_vector=biometric_vector,
            embedding_vector=embedding_vector
        )

        updates = {
            "last_image": record.image,
            "current_status": PresenceStatus.IN if entry_type == EntryType.ENTRY else PresenceStatus.OUT,
            "biometric_vector": biometric_vector,
            "embedding_vector": embedding_vector
        }
        if entry_type == EntryType.ENTRY:
            updates["last_entry"] = record.timestamp
        else:
            updates["last_exit"] = record.timestamp
        if is_new:
            updates["name"] = name
            updates["email"] = email
        profile = self.store.update_profile(attendee_id, **updates)

        action = "Checked in" if entry_type == EntryType.ENTRY else "Checked out"
        greeting = "Welcome" if is_new else "Welcome back"
        time_str = record.timestamp.strftime("%I:%M %p")
        message = f"{greeting}, {profile.name}! {action} at {time_str}"

        return ResolutionResult(
            success=True,
            status=PipelineState.RESOLVED,
            message=message,
            entry_type=entry_type,
            match_method=method,
            confidence=confidence,
            is_new_attendee=is_new,
            face_detected=biometric_vector is not None,
            record=record,
            profile=profile
        )

    async def _extract(self, extractor: Optional[FeatureExtractor], rgb: np.ndarray) -> Optional[np.ndarray]:
        if extractor is None or not extractor.is_ready:
            return None
        return await extractor.extract(rgb)

    def _decode_capture(self, image: ImageInput) -> Tuple[np.ndarray, np.ndarray]:
        """RGB array for the extractors and the resampled pixels for comparison."""
        decoded = decode_image(image)
        return np.asarray(decoded), to_pixels(decoded, self.pixel_size)

    def _compare_to_stored(self, capture_pixels: np.ndarray, stored_image: str) -> float:
        try:
            stored = load_pixels(stored_image, self.pixel_size)
        except ImageDecodeError as e:
            logger.warning(f"[PIPELINE] Stored image unreadable, scoring 0: {e}")
            return 0.0
        return pixel_array_confidence(capture_pixels, stored)

    def _reject(self, reason: RejectionReason, message: str, **details) -> ResolutionResult:
        return ResolutionResult(
            success=False,
            status=PipelineState.REJECTED,
            message=message,
            reason=reason,
            **details
        )
