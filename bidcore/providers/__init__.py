"""Model provider adapters."""

from .base import ModelProvider, GenerationRequest, GenerationResponse, JSON_RESPONSE_FORMAT
from .bedrock import BedrockProvider
from .images import ImageInput, load_image, load_images

__all__ = [
    'ModelProvider',
    'GenerationRequest',
    'GenerationResponse',
    'JSON_RESPONSE_FORMAT',
    'BedrockProvider',
    'ImageInput',
    'load_image',
    'load_images',
]
