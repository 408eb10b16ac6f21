"""
Embedding module for lost & found items.
Turns item photos and free-text queries into CLIP vectors in a shared space.
"""

import io
import logging
import threading
from typing import Callable, Optional

import numpy as np
import torch
from PIL import Image, ImageOps, UnidentifiedImageError
from transformers import CLIPModel, CLIPProcessor

from .config import Config
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


def resolve_device(device: Optional[str] = None) -> str:
    if device is None or device == 'auto':
        if torch.cuda.is_available():
            logger.info(f"GPU detected: {torch.cuda.get_device_name(0)}")
            return 'cuda'
        logger.info("GPU not available, using CPU")
        return 'cpu'
    return device


def downscale_image(image: Image.Image, max_size: int) -> Image.Image:
    """Shrink an image to fit inside max_size x max_size, keeping aspect ratio.

    Images already inside the bound are returned unchanged (never enlarged).
    """
    if max(image.size) <= max_size:
        return image
    image = image.copy()
    image.thumbnail((max_size, max_size), Image.LANCZOS)
    return image


def load_image(raw_bytes: bytes, mime: Optional[str] = None) -> Image.Image:
    """Decode raw upload bytes into an RGB PIL image."""
    if mime and not mime.startswith('image/'):
        raise EmbeddingError(f"Unsupported content type: {mime}")
    if not raw_bytes:
        raise EmbeddingError("Empty image payload")
    if isinstance(raw_bytes, memoryview):
        raw_bytes = raw_bytes.tobytes()
    try:
        image = Image.open(io.BytesIO(raw_bytes))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise EmbeddingError(f"Could not decode image: {e}") from e

    # malformed EXIF or palette data fails here, after a successful decode
    try:
        image = ImageOps.exif_transpose(image)
        if image.mode != 'RGB':
            image = image.convert('RGB')
    except Exception as e:
        raise EmbeddingError(f"Could not prepare image: {e}") from e
    return image


class ClipEncoder:
    """
    Wraps a pre-trained CLIP model. Image and text vectors share one space,
    so a text query can be scored against item photos.
    """

    def __init__(self, model_name: str, device: Optional[str] = None, cache_dir: Optional[str] = None):
        self.model_name = model_name
        self.device = resolve_device(device)
        self.model = CLIPModel.from_pretrained(model_name, cache_dir=cache_dir or None).to(self.device)
        self.model.eval()
        self.processor = CLIPProcessor.from_pretrained(model_name, cache_dir=cache_dir or None)
        self.feature_dim = self.model.config.projection_dim

        logger.info(f"Model: {self.model_name} on {self.device} (dim={self.feature_dim})")

    def encode_image(self, image: Image.Image) -> np.ndarray:
        inputs = self.processor(images=image, return_tensors="pt").to(self.device)
        with torch.no_grad():
            features = self.model.get_image_features(**inputs)
        return features[0].cpu().numpy()

    def encode_text(self, text: str) -> np.ndarray:
        inputs = self.processor(text=[text], return_tensors="pt", padding=True, truncation=True).to(self.device)
        with torch.no_grad():
            features = self.model.get_text_features(**inputs)
        return features[0].cpu().numpy()


class ItemEmbedder:
    """
    Embedding adapter used by ingestion and search.

    The underlying encoder is built on first use and shared afterwards.
    Construction is single-flight: concurrent first callers block on one lock
    and only one of them loads the model.
    """

    def __init__(self, encoder_factory: Optional[Callable[[], object]] = None,
                 max_image_size: int = None):
        self._encoder_factory = encoder_factory or (
            lambda: ClipEncoder(Config.MODEL_NAME, Config.DEVICE, Config.MODEL_CACHE_DIR)
        )
        self.max_image_size = max_image_size or Config.MAX_IMAGE_SIZE
        self._encoder = None
        self._init_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._encoder is not None

    def _get_encoder(self):
        encoder = self._encoder
        if encoder is not None:
            return encoder
        with self._init_lock:
            if self._encoder is None:
                logger.info("Loading embedding model...")
                try:
                    self._encoder = self._encoder_factory()
                except Exception as e:
                    raise EmbeddingError(f"Failed to load embedding model: {e}") from e
            return self._encoder

    @staticmethod
    def _normalize(vector) -> np.ndarray:
        vector = np.asarray(vector, dtype='float32').flatten()
        if vector.size == 0 or not np.all(np.isfinite(vector)):
            raise EmbeddingError("Model returned an invalid embedding")
        norm = np.linalg.norm(vector)
        if norm == 0:
            raise EmbeddingError("Model returned a zero embedding")
        return vector / norm

    def embed_image(self, raw_bytes: bytes, mime: Optional[str] = None) -> np.ndarray:
        """
        Generate a normalised embedding for an uploaded image.

        Args:
            raw_bytes: encoded image (jpeg, png, ...)
            mime: optional content type; anything other than image/* is rejected

        Returns:
            float32 unit vector
        """
        image = load_image(raw_bytes, mime)
        image = downscale_image(image, self.max_image_size)
        encoder = self._get_encoder()
        try:
            vector = encoder.encode_image(image)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Image embedding failed: {e}") from e
        return self._normalize(vector)

    def embed_text(self, text: str) -> np.ndarray:
        """Generate a normalised embedding for a text query or description."""
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        encoder = self._get_encoder()
        try:
            vector = encoder.encode_text(text.strip())
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Text embedding failed: {e}") from e
        return self._normalize(vector)


_shared_embedder: Optional[ItemEmbedder] = None
_shared_lock = threading.Lock()


def get_embedder() -> ItemEmbedder:
    """Process-wide embedder; the model itself still loads lazily on first embed."""
    global _shared_embedder
    with _shared_lock:
        if _shared_embedder is None:
            _shared_embedder = ItemEmbedder()
        return _shared_embedder
