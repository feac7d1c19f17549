from __future__ import annotations

__all__ = ["classify_scan_role", "get_orientation", "is_volumetric", "UNKNOWN"]

from typing import Any, Callable

import numpy as np

#: Tag value used when a classification cannot be derived.
UNKNOWN = "Unknown"


# ---------------------------------------------------------------------------
# Scan-role classifier registry
# ---------------------------------------------------------------------------

# Maps DICOM modality → scan-role classifier
# Signature: (series_description) -> str
_ROLE_CLASSIFIERS: dict[str, Callable[[str], str]] = {}


def _register_role(modality: str):
    """Decorator to register a scan-role classifier for a modality."""

    def decorator(fn: Callable[[str], str]) -> Callable[[str], str]:
        _ROLE_CLASSIFIERS[modality] = fn
        return fn

    return decorator


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify_scan_role(ds: Any) -> str:
    """Return the scan role of a DICOM header, e.g. ``"PET AC"`` or ``"CT Non-AC"``.

    *ds* is a :class:`pydicom.dataset.Dataset` (or any object exposing
    ``get(keyword)``).  The role is chosen by the classifier registered for
    the header's ``Modality``; headers with no modality, or a modality with
    no registered classifier, are ``"Unknown"``.
    """
    modality = _text(ds.get("Modality"))
    classifier = _ROLE_CLASSIFIERS.get(modality)
    if classifier is None:
        return UNKNOWN
    return classifier(_text(ds.get("SeriesDescription")))


def get_orientation(ds: Any) -> str:
    """Return ``"Axial"``, ``"Coronal"``, ``"Sagittal"`` or ``"Unknown"``.

    The slice normal is the cross product of the row and column direction
    cosines in ``ImageOrientationPatient``; its dominant axis gives the
    orientation (x → sagittal, y → coronal, z → axial).
    """
    iop = ds.get("ImageOrientationPatient")
    if iop is None:
        return UNKNOWN
    try:
        values = np.asarray([float(v) for v in iop], dtype=float)
    except (TypeError, ValueError):
        return UNKNOWN
    if values.size != 6:
        return UNKNOWN

    normal = np.cross(values[:3], values[3:])
    norm = np.linalg.norm(normal)
    if not np.isfinite(norm) or norm == 0:
        return UNKNOWN

    axis = int(np.argmax(np.abs(normal / norm)))
    return ("Sagittal", "Coronal", "Axial")[axis]


def is_volumetric(ds: Any) -> bool:
    """Return True when the header carries any multi-slice / volume attribute.

    Any of ``NumberOfFrames``, ``NumberOfSlices``, ``SliceThickness`` or
    ``SpacingBetweenSlices`` being present and non-empty is enough.
    """
    for keyword in ("NumberOfFrames", "NumberOfSlices", "SliceThickness", "SpacingBetweenSlices"):
        value = ds.get(keyword)
        if value is not None and value != "":
            return True
    return False


# ---------------------------------------------------------------------------
# Role classifiers
# ---------------------------------------------------------------------------


@_register_role("PT")
def _pet_role(description: str) -> str:
    """PET is non-attenuation-corrected when the description says so (or is a fusion)."""
    if _contains_any(description, ("NAC", "Uncorrected", "Fused")):
        return "PET Non-AC"
    return "PET AC"


@_register_role("CT")
def _ct_role(description: str) -> str:
    """Scouts and DX localisers are not usable as attenuation maps."""
    if _contains_any(description, ("DX", "Scout", "NAC", "Uncorrected")):
        return "CT Non-AC"
    return "CT AC"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    """Return *value* as a stripped string; ``None`` becomes ``""``."""
    if value is None:
        return ""
    return str(value).strip()


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    """Case-insensitive substring test for any of *keywords*."""
    folded = text.casefold()
    return any(k.casefold() in folded for k in keywords)
