"""Static IIIF derivative generation: tiles, sized renditions, info.json and manifest.json."""

__version__ = "1.0.0"
