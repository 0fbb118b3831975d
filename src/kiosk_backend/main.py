"""
Attendance Kiosk API
====================
Flow:
1. Kiosk UI submits name, email and a captured still
2. Face descriptor / image embedding extracted when the models are loaded
3. Identity resolved (descriptor -> embedding -> pixels -> email -> new)
4. Check-in or check-out recorded, checkout verified against today's photo
5. Result returned to the kiosk UI
"""

import os
import logging
from pathlib import Path
from typing import Optional
from datetime import datetime

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError, field_validator

from .database import AttendanceStore, DatabaseManager, SqlBlobStore, get_db_manager
from .database.attendance_store import DEFAULT_RECENT_LIMIT
from .pipeline import IdentityResolutionPipeline
from .recognition.extractors import FaceDescriptorExtractor, ImageEmbeddingExtractor, MODELS_DIR
from .recognition.similarity import encode_data_url

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============== Configuration ==============
KIOSK_MODELS_DIR = Path(os.environ.get("KIOSK_MODELS_DIR", MODELS_DIR))
EMBEDDING_MODEL_PATH = os.environ.get("KIOSK_EMBEDDING_MODEL")
MAX_RECORDS_LIMIT = 500
# ==========================================

app = FastAPI(
    title="Attendance Kiosk API",
    description="Check-in/check-out kiosk with face matching and email fallback",
    version="1.0.0"
)

# The kiosk UI is served from a different origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Request Models ==============
class AttendanceForm(BaseModel):
    name: str = Field(..., description="Attendee display name")
    email: str = Field(..., description="Attendee email, used as identity fallback")

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("email")
    @classmethod
    def email_has_at(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("Please enter a valid email address")
        return value


# ============== Global Instances ==============
db_manager: Optional[DatabaseManager] = None
face_extractor: Optional[FaceDescriptorExtractor] = None
embedding_extractor: Optional[ImageEmbeddingExtractor] = None
pipeline: Optional[IdentityResolutionPipeline] = None


def require_pipeline() -> IdentityResolutionPipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Attendance pipeline not available")
    return pipeline


def default_records_limit() -> int:
    if db_manager is None:
        return DEFAULT_RECENT_LIMIT
    return db_manager.get_config_int("recent_records_limit", DEFAULT_RECENT_LIMIT)


@app.on_event("startup")
async def startup_event():
    """Load models, open the database and build the pipeline."""
    global db_manager, face_extractor, embedding_extractor, pipeline

    logger.info("=" * 60)
    logger.info("Starting Attendance Kiosk")
    logger.info("=" * 60)

    KIOSK_MODELS_DIR.mkdir(parents=True, exist_ok=True)

    face_extractor = FaceDescriptorExtractor(models_dir=KIOSK_MODELS_DIR)
    face_loaded = face_extractor.load()

    embedding_extractor = ImageEmbeddingExtractor(
        model_path=Path(EMBEDDING_MODEL_PATH) if EMBEDDING_MODEL_PATH else None
    )
    embedding_loaded = embedding_extractor.load()

    try:
        db_manager = get_db_manager()
        store = AttendanceStore(SqlBlobStore(db_manager))
        pipeline = IdentityResolutionPipeline.from_config(
            db_manager,
            store=store,
            face_extractor=face_extractor,
            embedding_extractor=embedding_extractor
        )
        summary = store.get_summary()
        logger.info(f"Database: ✓ Initialized ({summary['total_profiles']} profiles, {summary['total_records']} records)")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        pipeline = None

    logger.info("-" * 60)
    logger.info(f"Face Descriptor: {'✓ Loaded' if face_loaded else '✗ Not Available'}")
    logger.info(f"Image Embedding: {'✓ Loaded' if embedding_loaded else '✗ Not Available'}")
    logger.info(f"Attendance Store: {'✓ Ready' if pipeline else '✗ Disabled'}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    if db_manager:
        db_manager.close()


@app.get("/")
async def root():
    """Health check endpoint."""
    summary = pipeline.store.get_summary() if pipeline else {}
    return {
        "status": "online",
        "service": "Attendance Kiosk API",
        "face_descriptor_model": bool(face_extractor and face_extractor.is_ready),
        "image_embedding_model": bool(embedding_extractor and embedding_extractor.is_ready),
        "attendance_store": pipeline is not None,
        "busy": bool(pipeline and pipeline.is_busy),
        "profiles_count": summary.get("total_profiles", 0),
        "records_count": summary.get("total_records", 0)
    }


@app.post("/attendance")
async def submit_attendance(
    name: str = Form(..., description="Attendee display name"),
    email: str = Form(..., description="Attendee email"),
    image: UploadFile = File(...)
):
    """
    Main check-in/check-out endpoint.

    Rejections (checkout mismatch, unreadable photo) come back with
    success=false rather than an HTTP error, so the kiosk can ask for a
    new photo.
    """
    active = require_pipeline()
    start_time = datetime.now()

    try:
        form = AttendanceForm(name=name, email=email)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=[err["msg"] for err in e.errors()]
        )

    contents = await image.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty image upload")

    # Browsers sometimes label captures application/octet-stream; sniff those
    content_type = image.content_type if (image.content_type or "").startswith("image/") else None
    data_url = encode_data_url(contents, content_type)
    result = await active.process_capture(data_url, form.name, form.email)

    response = result.to_dict()
    response["processing_time_ms"] = (datetime.now() - start_time).total_seconds() * 1000
    response["timestamp"] = datetime.now().isoformat()
    return response


@app.get("/attendance/records")
async def get_recent_records(
    limit: Optional[int] = Query(
        None, ge=1, le=MAX_RECORDS_LIMIT,
        description="Number of records, newest first (default: recent_records_limit setting)"
    ),
    include_images: bool = Query(False, description="Include the captured stills")
):
    """Get the most recent attendance records."""
    active = require_pipeline()
    if limit is None:
        limit = default_records_limit()

    exclude = {"biometric_vector", "embedding_vector"}
    if not include_images:
        exclude.add("image")

    records = [r.model_dump(mode="json", exclude=exclude) for r in active.store.get_recent_records(limit)]
    return {"success": True, "records": records, "count": len(records)}


@app.get("/attendance/profiles")
async def list_profiles():
    """List attendee profiles with their presence status."""
    active = require_pipeline()
    profiles = [
        p.model_dump(mode="json", exclude={"last_image", "biometric_vector", "embedding_vector"})
        for p in active.store.profiles
    ]
    return {"success": True, "profiles": profiles, "count": len(profiles)}


@app.get("/attendance/stats")
async def get_attendance_stats():
    """Presence summary plus database statistics."""
    active = require_pipeline()

    stats = {"success": True, "summary": active.store.get_summary()}
    if db_manager:
        try:
            stats["database"] = db_manager.get_stats()
        except Exception as e:
            logger.error(f"Error getting database stats: {e}")
            raise HTTPException(status_code=500, detail=str(e))
    return stats


@app.delete("/attendance")
async def clear_attendance():
    """Remove every record and profile."""
    active = require_pipeline()
    if active.is_busy:
        raise HTTPException(status_code=409, detail="A capture is being processed")

    active.store.clear_all_data()
    logger.info("All attendance data cleared via API")
    return {"success": True, "message": "All attendance records have been removed"}


def run():
    import uvicorn
    uvicorn.run(app, host=os.environ.get("KIOSK_HOST", "127.0.0.1"), port=int(os.environ.get("KIOSK_PORT", "8000")))


if __name__ == "__main__":
    run()
