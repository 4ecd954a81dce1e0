"""
slidepipe - watched-folder ingestion and Deep Zoom conversion for
whole-slide images.
"""

__version__ = "0.1.0"
