"""
Recognition Module
==================
Similarity measures, best-match search and feature extractors.
"""

from .similarity import (
    ImageDecodeError,
    cosine_confidence,
    decode_image,
    encode_data_url,
    euclidean_confidence,
    load_pixels,
    pixel_array_confidence,
    pixel_confidence,
)
from .matching import MatchEngine, MatchResult, biometric_engine, embedding_engine
from .extractors import FeatureExtractor, FaceDescriptorExtractor, ImageEmbeddingExtractor

__all__ = [
    'ImageDecodeError',
    'cosine_confidence',
    'decode_image',
    'encode_data_url',
    'euclidean_confidence',
    'load_pixels',
    'pixel_array_confidence',
    'pixel_confidence',
    'MatchEngine',
    'MatchResult',
    'biometric_engine',
    'embedding_engine',
    'FeatureExtractor',
    'FaceDescriptorExtractor',
    'ImageEmbeddingExtractor'
]
