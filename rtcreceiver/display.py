"""
Display consumer for acquired frame sources.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Tuple

LOG = logging.getLogger(__name__)


class FrameSink(Protocol):
    def set_frame_source(self, source: Any) -> None: ...


class FrameSourceDisplay:
    """
    Headless display surface.

    Holds the frame source handed over by the acquisition loop and reports
    what is being shown.  The configured size is only a hint; a mismatch is
    logged, never corrected.
    """

    def __init__(self, width: int = 1920, height: int = 1080) -> None:
        self.target_size: Tuple[int, int] = (int(width), int(height))
        self._source: Any = None

    @property
    def is_receiving(self) -> bool:
        return self._source is not None

    @property
    def source(self) -> Any:
        return self._source

    @property
    def frame_size(self) -> Optional[Tuple[int, int]]:
        if self._source is None:
            return None
        return int(self._source.width), int(self._source.height)

    def set_frame_source(self, source: Any) -> None:
        if self._source is not None:
            LOG.warning("Frame source already set; ignoring replacement")
            return
        self._source = source
        size = self.frame_size
        if size != self.target_size:
            LOG.info("Video source is %dx%d (target hint %dx%d)", size[0], size[1], *self.target_size)
        else:
            LOG.info("Video display setup completed (%dx%d)", *size)


__all__ = ["FrameSink", "FrameSourceDisplay"]
