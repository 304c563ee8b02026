"""Network helpers for the Lens pipeline.

validate_image_urls:
    Syntactic checks on stored image references.

check_images:
    Confirm image URLs resolve to images (VALIDATE_IMAGES=true).
"""

from tools.images import ImageCheck, check_image, check_images, validate_image_urls

__all__ = [
    "ImageCheck",
    "check_image",
    "check_images",
    "validate_image_urls",
]
