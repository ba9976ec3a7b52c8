"""Rendition selection: which output variants to produce for a source."""

from typing import Iterable, List, Optional

from api.models import MediaInfo, Rendition
from config import RENDITION_PRESETS


def load_presets(presets: Optional[Iterable[dict]] = None) -> List[Rendition]:
    """Build the rendition catalog, ascending by height."""
    catalog = [Rendition.from_dict(p) for p in (presets if presets is not None else RENDITION_PRESETS)]
    return sorted(catalog, key=lambda r: r.height)


def _even(value: int) -> int:
    # libx264 with yuv420p needs even dimensions
    return max(2, value - value % 2)


def select_renditions(info: MediaInfo, presets: Optional[Iterable[dict]] = None) -> List[Rendition]:
    """
    Pick renditions for a source: every preset no taller than the source.

    When the source is shorter than the smallest preset, that preset is kept
    with its bitrates but its box is shrunk to the source dimensions, so the
    plan is never empty and never upscales.
    """
    catalog = load_presets(presets)
    if not catalog:
        raise ValueError("Rendition catalog is empty")

    selected = [r for r in catalog if r.height <= info.height]
    if selected:
        return selected

    smallest = catalog[0]
    return [
        Rendition(
            name=smallest.name,
            width=_even(min(smallest.width, info.width)),
            height=_even(min(smallest.height, info.height)),
            video_bitrate=smallest.video_bitrate,
            audio_bitrate=smallest.audio_bitrate,
        )
    ]
