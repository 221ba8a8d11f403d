"""Object storage for offloaded activity photos."""

from .images import (
    EmbeddedImage,
    decode_base64_image,
    extract_base64_image,
    is_data_url,
    transcode_to_avif,
)
from .s3_store import (
    AssetStore,
    S3AssetStore,
    build_asset_store,
    construct_public_url,
)

__all__ = [
    "AssetStore",
    "EmbeddedImage",
    "S3AssetStore",
    "build_asset_store",
    "construct_public_url",
    "decode_base64_image",
    "extract_base64_image",
    "is_data_url",
    "transcode_to_avif",
]
