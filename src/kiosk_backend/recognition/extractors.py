"""
Feature Extractors
==================
Async wrappers turning a captured still into a numeric vector.

- FaceDescriptorExtractor: InsightFace face descriptor (largest face)
- ImageEmbeddingExtractor: TorchScript image embedding model

Each extractor loads independently. A model that fails to load leaves its
extractor not ready, and the pipeline skips that stage.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from .similarity import ImageInput, decode_image

logger = logging.getLogger(__name__)

MODELS_DIR = Path(__file__).resolve().parent.parent / "models"
INSIGHTFACE_MODEL_NAME = "buffalo_l"
EMBEDDING_INPUT_SIZE = (224, 224)


def get_onnx_providers() -> list:
    """
    Get available ONNX Runtime execution providers.
    Only includes CUDAExecutionProvider if ONNX Runtime reports it.
    """
    providers = []

    try:
        import onnxruntime as ort
        if 'CUDAExecutionProvider' in ort.get_available_providers():
            providers.append('CUDAExecutionProvider')
            logger.info("CUDA is available - using GPU acceleration")
    except Exception as e:
        logger.debug(f"CUDA availability check failed: {e}")

    # Always include CPU as fallback
    providers.append('CPUExecutionProvider')
    return providers


class FeatureExtractor:
    """
    Base class: `extract` never raises, it returns None instead.

    Subclasses implement `load` and `_extract_rgb`, which receives an
    RGB uint8 array and runs in a worker thread.
    """

    name = "extractor"

    def __init__(self):
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def load(self) -> bool:
        raise NotImplementedError

    def _extract_rgb(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _extract_any(self, image: Union[ImageInput, np.ndarray]) -> Optional[np.ndarray]:
        rgb = image if isinstance(image, np.ndarray) else np.asarray(decode_image(image))
        return self._extract_rgb(rgb)

    async def extract(self, image: Union[ImageInput, np.ndarray]) -> Optional[np.ndarray]:
        """
        Args:
            image: An encoded still, or an RGB uint8 array already decoded
                   by the caller. Decoding runs in the worker thread.
        """
        if not self.is_ready:
            logger.debug(f"[{self.name}] not ready, skipping")
            return None

        try:
            vector = await asyncio.to_thread(self._extract_any, image)
        except Exception as e:
            logger.error(f"[{self.name}] extraction failed: {e}")
            return None

        if vector is None:
            return None
        vector = np.asarray(vector, dtype=np.float32).ravel()
        logger.debug(f"[{self.name}] extracted {vector.size} dimensions")
        return vector if vector.size else None


class FaceDescriptorExtractor(FeatureExtractor):
    """
    InsightFace descriptor of the largest detected face.
    Returns the L2-normalised embedding; no face means None.
    """

    name = "face-descriptor"

    def __init__(self, model_name: str = INSIGHTFACE_MODEL_NAME, models_dir: Path = MODELS_DIR,
                 det_size: tuple = (320, 320)):
        super().__init__()
        self.model_name = model_name
        self.models_dir = Path(models_dir)
        self.det_size = det_size
        self.face_analyzer = None

    def load(self) -> bool:
        try:
            from insightface.app import FaceAnalysis

            providers = get_onnx_providers()
            logger.info(f"Loading InsightFace model: {self.model_name} ({providers})")

            self.face_analyzer = FaceAnalysis(
                name=self.model_name,
                root=str(self.models_dir),
                providers=providers
            )
            # ctx_id: -1 for CPU, 0 for GPU
            ctx_id = 0 if 'CUDAExecutionProvider' in providers else -1
            self.face_analyzer.prepare(ctx_id=ctx_id, det_size=self.det_size)

            self._ready = True
            logger.info("InsightFace model loaded successfully")
        except ImportError as e:
            logger.error(f"Failed to import insightface: {e}")
            self._ready = False
        except Exception as e:
            logger.error(f"Failed to load InsightFace model: {e}")
            self._ready = False
        return self._ready

    def _extract_rgb(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
        faces = self.face_analyzer.get(bgr)
        if not faces:
            logger.info(f"[{self.name}] no face detected")
            return None

        # The largest face is most likely the person at the kiosk
        largest = max(faces, key=lambda f: (f.bbox[2] - f.bbox[0]) * (f.bbox[3] - f.bbox[1]))
        return largest.normed_embedding


class ImageEmbeddingExtractor(FeatureExtractor):
    """
    Whole-image embedding from a TorchScript model.
    The image is resized to 224x224, ImageNet-normalised and fed as NCHW.
    """

    name = "image-embedding"

    def __init__(self, model_path: Optional[Path] = None, device: Optional[str] = None):
        super().__init__()
        self.model_path = Path(model_path) if model_path else None
        self.device = device
        self.model = None
        self.mean = np.array([0.485, 0.456, 0.406], dtype=np.float32)
        self.std = np.array([0.229, 0.224, 0.225], dtype=np.float32)

    def load(self) -> bool:
        if self.model_path is None or not self.model_path.exists():
            logger.warning(f"Embedding model not found at {self.model_path}")
            self._ready = False
            return False

        try:
            import torch

            self.device = self.device or ("cuda" if torch.cuda.is_available() else "cpu")
            logger.info(f"Loading embedding model on {self.device}")
            self.model = torch.jit.load(str(self.model_path), map_location=self.device)
            self.model.eval()

            self._ready = True
            logger.info("Embedding model loaded successfully")
        except ImportError as e:
            logger.error(f"Failed to import torch: {e}")
            self._ready = False
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            self._ready = False
        return self._ready

    def preprocess(self, rgb: np.ndarray) -> np.ndarray:
        resized = cv2.resize(rgb, EMBEDDING_INPUT_SIZE)
        normalized = (resized.astype(np.float32) / 255.0 - self.mean) / self.std
        return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...])

    def _extract_rgb(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        import torch

        batch = torch.from_numpy(self.preprocess(rgb)).to(self.device)
        with torch.no_grad():
            output = self.model(batch)
        return output.detach().cpu().numpy()
