"""Shared story schema keys to avoid magic strings across the archiver."""

from __future__ import annotations

# Story metadata keys
K_ID = "id"
K_NAME = "name"
K_IMAGES = "images"
K_URL = "url"
K_CSS = "css"
K_HTML_ELEMENTS = "html_elements"
K_HTML = "html"

# Top-level image fields outside the story image list
K_COVER_IMAGE = "cover_image"
K_BACKGROUND_IMAGE = "background_image"
K_THUMBNAIL = "thumbnail"
MISC_IMAGE_KEYS = (K_COVER_IMAGE, K_BACKGROUND_IMAGE, K_THUMBNAIL)

# Title module exports
K_TITLE = "title"
K_URL_TITLE = "urlTitle"
