from .engine import ImageEngine, PillowImageEngine

__all__ = ["ImageEngine", "PillowImageEngine"]
