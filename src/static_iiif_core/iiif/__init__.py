"""IIIF Image API and Presentation API document builders."""

from .descriptor import ImageServiceDescriptor, build_descriptor, read_descriptor
from .manifest import RenderingLink, build_manifest, ensure_context

__all__ = [
    "ImageServiceDescriptor",
    "RenderingLink",
    "build_descriptor",
    "build_manifest",
    "ensure_context",
    "read_descriptor",
]
