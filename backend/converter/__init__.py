"""Batch image/video conversion to WebP/WebM with ZIP packaging."""
