"""Gallery filtering and variation grouping over cached images."""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .models import CachedImage

ALL_FOLDERS = "all"
NO_FOLDER = "no-folder"


def _lower(value: Optional[str]) -> str:
    return (value or "").lower()


def effective_parent_id(image: CachedImage, known_ids: Set[str]) -> Optional[str]:
    """Return ``image.parent_id`` only if the parent is still in the catalog.

    A child whose parent was deleted keeps its ``parent_id`` but is treated
    as canonical for grouping and filtering.
    """
    if image.parent_id and image.parent_id in known_ids:
        return image.parent_id
    return None


def is_canonical(image: CachedImage, known_ids: Set[str]) -> bool:
    return effective_parent_id(image, known_ids) is None


def group_variations(images: Sequence[CachedImage]) -> Dict[str, List[CachedImage]]:
    """Map each canonical image id to its variation children, in catalog order."""
    known_ids = {image.id for image in images}
    groups: Dict[str, List[CachedImage]] = {image.id: [] for image in images if is_canonical(image, known_ids)}
    for image in images:
        parent = effective_parent_id(image, known_ids)
        if parent is not None and parent in groups:
            groups[parent].append(image)
    return groups


def _matches_search(image: CachedImage, term: str) -> bool:
    haystacks = [
        _lower(image.filename),
        _lower(image.folder),
        _lower(image.alt_tag),
        _lower(image.original_url),
    ]
    haystacks.extend(_lower(tag) for tag in image.tags)
    return any(term in candidate for candidate in haystacks)


def filter_images(
    images: Sequence[CachedImage],
    folder: str = ALL_FOLDERS,
    tag: str = "",
    search: str = "",
    only_canonical: bool = False,
    hidden_folders: Optional[Iterable[str]] = None,
) -> List[CachedImage]:
    """Apply the gallery's folder, tag, free-text, canonical and hidden-folder filters."""
    term = search.strip().lower()
    hidden = set(hidden_folders or [])
    known_ids = {image.id for image in images} if only_canonical else set()
    results: List[CachedImage] = []
    for image in images:
        if folder == NO_FOLDER and image.folder:
            continue
        if folder not in (ALL_FOLDERS, NO_FOLDER) and image.folder != folder:
            continue
        if tag and tag not in image.tags:
            continue
        if term and not _matches_search(image, term):
            continue
        if only_canonical and not is_canonical(image, known_ids):
            continue
        if image.folder and image.folder in hidden:
            continue
        results.append(image)
    return results


def folder_counts(images: Iterable[CachedImage]) -> Dict[str, int]:
    """Return image counts per folder, sorted by folder name."""
    counts = Counter(image.folder for image in images if image.folder)
    return dict(sorted(counts.items(), key=lambda item: item[0].lower()))
