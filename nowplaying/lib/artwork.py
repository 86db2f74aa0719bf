# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Album art for the widget.

Plex serves thumbs at paths like /library/metadata/1234/thumb/1700000000;
the trailing timestamp changes whenever the art changes, so the path alone
is a safe cache key and never carries the token.  Art is shrunk to the
widget's display size and re-encoded as JPEG off the event loop.
"""

import base64
import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

log = logging.getLogger(__name__)

DISPLAY_SIZE = (300, 300)   # largest album art the widget draws
JPEG_QUALITY = 85
CACHE_TRACKS = 50

render_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="artwork")


@dataclass(frozen=True)
class Artwork:
    jpeg: bytes
    size: tuple[int, int]

    @property
    def data_url(self) -> str:
        return "data:image/jpeg;base64," + base64.b64encode(self.jpeg).decode("ascii")


class ArtworkCache:
    """Rendered art by thumb path, least recently used dropped first."""

    def __init__(self, max_tracks: int = CACHE_TRACKS):
        self.max_tracks = max_tracks
        self._by_path: OrderedDict[str, Artwork] = OrderedDict()

    def lookup(self, thumb_path: str) -> Artwork | None:
        artwork = self._by_path.get(thumb_path)
        if artwork is not None:
            self._by_path.move_to_end(thumb_path)
        return artwork

    def store(self, thumb_path: str, artwork: Artwork):
        self._by_path[thumb_path] = artwork
        self._by_path.move_to_end(thumb_path)
        while len(self._by_path) > self.max_tracks:
            self._by_path.popitem(last=False)

    def __len__(self):
        return len(self._by_path)


def render_artwork(image_bytes: bytes, size=DISPLAY_SIZE) -> Artwork | None:
    """Fit raw image bytes inside *size* and encode them as JPEG.

    CPU-bound; run it in render_executor.  None when the bytes are not an image.
    """
    try:
        with Image.open(BytesIO(image_bytes)) as source:
            image = ImageOps.exif_transpose(source)
            if image.mode != "RGB":
                image = image.convert("RGB")
            image.thumbnail(size, Image.Resampling.LANCZOS)

            buf = BytesIO()
            image.save(buf, "JPEG", quality=JPEG_QUALITY, optimize=True)
            return Artwork(jpeg=buf.getvalue(), size=image.size)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        log.warning("Album art is not a usable image: %s", e)
        return None
