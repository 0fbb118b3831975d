import asyncio
import math
from unittest.mock import patch

import pytest

from kiosk_backend.database import (
    AttendanceStore,
    EntryType,
    PresenceStatus,
    SqlBlobStore,
)
from kiosk_backend.pipeline import (
    IdentityResolutionPipeline,
    MatchMethod,
    PipelineState,
    RejectionReason,
)
from kiosk_backend.recognition.similarity import decode_image

from conftest import StaticExtractor, png_bytes, solid_image

BLACK = solid_image((0, 0, 0))
WHITE = solid_image((255, 255, 255))
# Pixel confidence against BLACK: about 0.65 and 0.75
FAR_FROM_BLACK = solid_image((255, 13, 0))
NEAR_BLACK = solid_image((191, 0, 0))


def capture(pipeline, image, name="Ann", email="ann@example.com"):
    return asyncio.run(pipeline.process_capture(image, name, email))


@pytest.fixture
def pipeline(store):
    return IdentityResolutionPipeline(store)


class TestEnrollment:
    def test_new_attendee_checks_in(self, pipeline, store):
        assert pipeline.state == PipelineState.AWAITING_CAPTURE

        result = capture(pipeline, BLACK)

        assert result.success
        assert result.status == PipelineState.RESOLVED
        assert result.entry_type == EntryType.ENTRY
        assert result.match_method == MatchMethod.NEW
        assert result.is_new_attendee
        assert result.message == "Welcome, Ann! Checked in at 09:00 AM"
        assert pipeline.state == PipelineState.RESOLVED

        record = store.records[0]
        profile = store.get_profile(record.attendee_id)
        assert record.name == "Ann"
        assert record.email == "ann@example.com"
        assert record.image == BLACK
        assert profile.current_status == PresenceStatus.IN
        assert profile.last_image == BLACK
        assert profile.last_entry == record.timestamp
        assert profile.last_exit is None

    def test_raw_bytes_stored_as_data_url(self, pipeline, store):
        result = capture(pipeline, png_bytes())
        assert result.success
        assert store.records[0].image.startswith("data:image/png;base64,")
        assert store.profiles[0].last_image == store.records[0].image

    def test_different_people_get_different_ids(self, pipeline, store):
        capture(pipeline, BLACK)
        result = capture(pipeline, WHITE, name="Bo", email="bo@example.com")

        assert result.is_new_attendee
        assert len(store.profiles) == 2
        assert len({r.attendee_id for r in store.records}) == 2


class TestToggle:
    def test_same_photo_checks_out(self, pipeline, store, clock):
        first = capture(pipeline, BLACK)
        clock.advance(hours=8)
        second = capture(pipeline, BLACK)

        assert second.success
        assert second.entry_type == EntryType.EXIT
        assert second.match_method == MatchMethod.PIXEL
        assert second.confidence == pytest.approx(1.0)
        assert second.message == "Welcome back, Ann! Checked out at 05:00 PM"

        profile = store.get_profile(first.record.attendee_id)
        assert profile.current_status == PresenceStatus.OUT
        assert profile.last_exit == second.record.timestamp
        assert profile.last_entry == first.record.timestamp
        assert [r.type for r in store.records] == [EntryType.EXIT, EntryType.ENTRY]

    def test_checks_back_in_after_exit(self, pipeline):
        capture(pipeline, BLACK)
        capture(pipeline, BLACK)
        third = capture(pipeline, BLACK)
        assert third.entry_type == EntryType.ENTRY
        assert third.profile.current_status == PresenceStatus.IN

    def test_record_uses_stored_identity(self, pipeline, store):
        capture(pipeline, BLACK)
        capture(pipeline, BLACK)
        result = capture(pipeline, WHITE, name="Annie", email="ANN@example.com")

        assert result.match_method == MatchMethod.EMAIL
        assert result.entry_type == EntryType.ENTRY
        assert result.record.name == "Ann"
        assert result.record.email == "ann@example.com"
        assert store.get_profile(result.record.attendee_id).last_image == WHITE


class TestCheckoutGate:
    def test_mismatched_photo_rejected(self, pipeline, store):
        first = capture(pipeline, BLACK)

        result = capture(pipeline, FAR_FROM_BLACK)

        assert not result.success
        assert result.status == PipelineState.REJECTED
        assert result.reason == RejectionReason.CHECKOUT_MISMATCH
        assert result.entry_type == EntryType.EXIT
        assert result.match_method == MatchMethod.EMAIL
        assert pipeline.state == PipelineState.REJECTED
        assert len(store.records) == 1
        profile = store.get_profile(first.record.attendee_id)
        assert profile.current_status == PresenceStatus.IN
        assert profile.last_image == BLACK

    def test_close_enough_photo_accepted(self, pipeline, store):
        capture(pipeline, BLACK)

        result = capture(pipeline, NEAR_BLACK)

        assert result.success
        assert result.entry_type == EntryType.EXIT
        assert [r.type for r in store.records].count(EntryType.EXIT) == 1

    def test_retake_after_rejection(self, pipeline, store):
        capture(pipeline, BLACK)
        assert not capture(pipeline, FAR_FROM_BLACK).success
        assert capture(pipeline, BLACK).success
        assert len(store.records) == 2

    def test_compares_with_latest_entry(self, pipeline):
        capture(pipeline, BLACK)
        capture(pipeline, BLACK)
        capture(pipeline, WHITE)  # re-entry by email with a new photo

        result = capture(pipeline, WHITE)
        assert result.success
        assert result.entry_type == EntryType.EXIT

    def test_no_entry_today_skips_check(self, pipeline, clock):
        capture(pipeline, BLACK)
        clock.advance(days=1)

        result = capture(pipeline, WHITE)
        assert result.success
        assert result.entry_type == EntryType.EXIT
        assert result.match_method == MatchMethod.EMAIL


class TestStages:
    def test_biometric_match(self, store):
        faces = StaticExtractor([0.1, 0.2, 0.3])
        embeddings = StaticExtractor([1.0, 0.0])
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces, embedding_extractor=embeddings)

        first = capture(pipeline, BLACK)
        second = capture(pipeline, BLACK, name="Someone", email="other@example.com")

        assert first.face_detected
        assert second.match_method == MatchMethod.BIOMETRIC
        assert second.confidence == pytest.approx(1.0)
        assert second.record.attendee_id == first.record.attendee_id
        # Matched on the descriptor, so the embedding stage never ran again
        assert embeddings.calls == 1

    def test_embedding_match(self, store):
        embeddings = StaticExtractor([0.6, 0.8])
        pipeline = IdentityResolutionPipeline(store, embedding_extractor=embeddings)

        first = capture(pipeline, BLACK)
        second = capture(pipeline, BLACK, email="other@example.com")

        assert not second.face_detected
        assert second.match_method == MatchMethod.EMBEDDING
        assert second.record.attendee_id == first.record.attendee_id
        assert store.profiles[0].embedding_vector == pytest.approx([0.6, 0.8])

    def test_unready_extractor_skipped(self, store):
        faces = StaticExtractor([0.1], ready=False)
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces)

        result = capture(pipeline, BLACK)
        assert result.success
        assert faces.calls == 0
        assert store.profiles[0].biometric_vector is None

    def test_extraction_failure_falls_through(self, store):
        faces = StaticExtractor(error=RuntimeError("model crashed"))
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces)

        capture(pipeline, BLACK)
        result = capture(pipeline, BLACK)

        assert result.success
        assert faces.calls == 2
        assert result.match_method == MatchMethod.PIXEL
        assert not result.face_detected

    def test_no_face_falls_back_to_email(self, store):
        faces = StaticExtractor(None)
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces)

        capture(pipeline, BLACK)
        capture(pipeline, BLACK)
        result = capture(pipeline, WHITE)

        assert result.match_method == MatchMethod.EMAIL
        assert not result.face_detected

    def test_biometric_vector_overwritten(self, store):
        faces = StaticExtractor([0.1, 0.2])
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces)
        capture(pipeline, BLACK)

        faces.vector = [0.1, 0.3]
        result = capture(pipeline, BLACK, email="elsewhere@example.com")

        assert result.match_method == MatchMethod.BIOMETRIC
        assert result.confidence == pytest.approx(0.9, abs=1e-4)
        assert store.profiles[0].biometric_vector == pytest.approx([0.1, 0.3], abs=1e-6)

    def test_missing_vector_keeps_stored_one(self, store):
        faces = StaticExtractor([0.1, 0.2])
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces)
        capture(pipeline, BLACK)

        faces.vector = None
        capture(pipeline, BLACK)

        assert store.profiles[0].biometric_vector == pytest.approx([0.1, 0.2], abs=1e-6)

    def test_pixel_threshold_not_reached(self, pipeline):
        capture(pipeline, BLACK)
        result = capture(pipeline, NEAR_BLACK, name="Cy", email="cy@example.com")

        assert result.is_new_attendee
        assert result.entry_type == EntryType.ENTRY


class TestFailures:
    def test_undecodable_capture(self, pipeline, store):
        result = capture(pipeline, "data:image/png;base64,AAAA")

        assert not result.success
        assert result.reason == RejectionReason.IMAGE_DECODE_FAILED
        assert pipeline.state == PipelineState.REJECTED
        assert store.records == ()
        assert store.profiles == ()

    def test_unexpected_error(self, pipeline, store, monkeypatch):
        def broken(**kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(store, "add_record", broken)
        result = capture(pipeline, BLACK)

        assert not result.success
        assert result.reason == RejectionReason.ERROR
        assert "boom" in result.message
        assert store.profiles == ()

    def test_unreadable_stored_image_scores_zero(self, store, pipeline):
        store.update_profile("p1", name="Old", email="old@example.com", last_image="data:image/png;base64,AAAA")

        result = capture(pipeline, BLACK)
        assert result.match_method == MatchMethod.NEW


class TestConcurrency:
    def test_captures_are_serialized(self, pipeline, store):
        async def both():
            return await asyncio.gather(
                pipeline.process_capture(BLACK, "Ann", "ann@example.com"),
                pipeline.process_capture(BLACK, "Ann", "ann@example.com"),
            )

        first, second = asyncio.run(both())

        assert first.entry_type == EntryType.ENTRY
        assert second.entry_type == EntryType.EXIT
        assert len(store.profiles) == 1
        assert len(store.records) == 2
        assert not pipeline.is_busy


class TestConfig:
    def test_from_config(self, db_manager):
        db_manager.set_config("pixel_match_threshold", "0.95")
        db_manager.set_config("checkout_match_threshold", "0.5")

        pipeline = IdentityResolutionPipeline.from_config(db_manager)

        assert pipeline.pixel_matcher.threshold == pytest.approx(0.95)
        assert pipeline.checkout_threshold == pytest.approx(0.5)
        assert pipeline.biometric_matcher.threshold == pytest.approx(0.6)
        assert pipeline.embedding_matcher.threshold == pytest.approx(0.75)
        assert pipeline.pixel_size == 64
        assert isinstance(pipeline.store.blobs, SqlBlobStore)

    def test_from_config_persists(self, db_manager):
        pipeline = IdentityResolutionPipeline.from_config(db_manager)
        capture(pipeline, BLACK)

        reloaded = AttendanceStore(SqlBlobStore(db_manager))
        assert len(reloaded.records) == 1
        assert reloaded.profiles[0].current_status == PresenceStatus.IN


class TestResultDict:
    def test_success(self, pipeline):
        data = capture(pipeline, BLACK).to_dict()

        assert data["success"] is True
        assert data["status"] == "RESOLVED"
        assert data["entry_type"] == "ENTRY"
        assert data["match_method"] == "new"
        assert data["is_new_attendee"] is True
        assert "image" not in data["record"]
        assert "biometric_vector" not in data["record"]
        assert "last_image" not in data["profile"]
        assert data["profile"]["current_status"] == "IN"

    def test_rejection(self, pipeline):
        data = capture(pipeline, "not an image").to_dict()

        assert data["success"] is False
        assert data["status"] == "REJECTED"
        assert data["reason"] == "IMAGE_DECODE_FAILED"
        assert "record" not in data


class TestCheckoutBoundary:
    """Solid 64x64 stills skip resampling, so confidences are exact."""

    BLACK_64 = solid_image((0, 0, 0), size=(64, 64))
    RED_64 = solid_image((255, 13, 0), size=(64, 64))
    # pixel_array_confidence of RED_64 against BLACK_64, computed the same way
    RED_CONFIDENCE = 1.0 - float(268 * 64 * 64) / (64 * 64 * 3 * 255)

    def test_confidence_equal_to_threshold_passes(self, store):
        pipeline = IdentityResolutionPipeline(store, checkout_threshold=self.RED_CONFIDENCE)
        capture(pipeline, self.BLACK_64)

        result = capture(pipeline, self.RED_64)

        assert result.success
        assert result.entry_type == EntryType.EXIT

    def test_confidence_just_below_threshold_rejected(self, store):
        threshold = math.nextafter(self.RED_CONFIDENCE, 1.0)
        pipeline = IdentityResolutionPipeline(store, checkout_threshold=threshold)
        capture(pipeline, self.BLACK_64)

        result = capture(pipeline, self.RED_64)

        assert result.reason == RejectionReason.CHECKOUT_MISMATCH
        assert len(store.records) == 1


class TestDecodeOnce:
    def test_extractors_reuse_decoded_capture(self, store):
        faces = StaticExtractor([0.1, 0.2])
        embeddings = StaticExtractor([1.0, 0.0])
        pipeline = IdentityResolutionPipeline(store, face_extractor=faces, embedding_extractor=embeddings)

        with patch("kiosk_backend.recognition.extractors.decode_image",
                   side_effect=AssertionError("capture decoded again")), \
                patch("kiosk_backend.pipeline.decode_image", wraps=decode_image) as pipeline_decode:
            result = capture(pipeline, solid_image(size=(40, 30)))

        assert result.face_detected
        assert store.profiles[0].embedding_vector == pytest.approx([1.0, 0.0])
        assert pipeline_decode.call_count == 1
        assert faces.inputs[0].shape == (30, 40, 3)
        assert embeddings.inputs[0] is faces.inputs[0]
