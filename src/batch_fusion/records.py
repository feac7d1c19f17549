from __future__ import annotations

__all__ = [
    "ImagingRecord",
    "RECORD_COLUMNS",
    "discover_records",
    "load_records",
    "record_from_dataset",
    "records_frame",
]

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Iterable

import pandas as pd
import pydicom
from pydicom.errors import InvalidDicomError

from batch_fusion.classify import classify_scan_role, get_orientation, is_volumetric
from batch_fusion.config import BatchConfig

logger = logging.getLogger(__name__)


@dataclass
class ImagingRecord:
    """Metadata of one series, taken from a representative file of its folder."""

    patient_name: str = ""
    patient_id: str = ""
    accession_number: str = ""
    study_uid: str = ""
    series_uid: str = ""
    frame_of_reference_uid: str = ""
    modality: str = ""
    scan_role: str = ""
    orientation: str = ""
    is_volumetric: bool = False
    slice_count: int = 0
    files_folder: str = ""


#: Column order used for record tables and the pre-extracted records CSV.
RECORD_COLUMNS: list[str] = [f.name for f in fields(ImagingRecord)]

_TRUE_STRINGS = {"true", "1", "yes", "y"}


def discover_records(config: BatchConfig) -> list[ImagingRecord]:
    """Return one :class:`ImagingRecord` per series folder.

    When ``config.records_file`` is set, the records are read from that CSV
    (see :func:`load_records`) and no folder is scanned.

    Otherwise every folder in ``config.input_dirs`` is scanned in order.  The
    top-level files of a folder are tried in sorted order; the first one that
    parses as DICOM becomes the folder's record and the rest are ignored.
    Folders that do not exist or hold no readable DICOM file are skipped.

    A series UID already seen in an earlier folder is dropped, so the returned
    records always have unique ``series_uid`` values.
    """
    if config.records_file is not None:
        records = load_records(config.records_file)
    else:
        records = []
        for folder in config.input_dirs:
            record = _record_from_folder(Path(folder))
            if record is not None:
                records.append(record)
    return _unique_series(records)


def load_records(csv_path: str | Path) -> list[ImagingRecord]:
    """Load pre-extracted records from a CSV file.

    The CSV must contain one column per :class:`ImagingRecord` field
    (see :data:`RECORD_COLUMNS`).  ``is_volumetric`` accepts ``True``/``False``
    (case-insensitive) or ``1``/``0``; an empty ``slice_count`` reads as 0.

    Raises
    ------
    ValueError
        If the CSV is missing any of the required columns.
    """
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    missing = set(RECORD_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(
            f"Records CSV {str(csv_path)!r} is missing required column(s): "
            f"{sorted(missing)}. Found: {sorted(df.columns.tolist())}"
        )

    records = []
    for _, row in df.iterrows():
        values = {col: row[col].strip() for col in RECORD_COLUMNS}
        values["is_volumetric"] = values["is_volumetric"].lower() in _TRUE_STRINGS
        values["slice_count"] = int(float(values["slice_count"])) if values["slice_count"] else 0
        records.append(ImagingRecord(**values))
    return records


def record_from_dataset(ds: Any, files_folder: str | Path, file_count: int) -> ImagingRecord:
    """Build a record from a parsed DICOM header.

    Parameters
    ----------
    ds:
        Header returned by :func:`pydicom.dcmread`.
    files_folder:
        Folder holding the series' files; passed on to the fusion job.
    file_count:
        Number of files in *files_folder*, used as the slice count when the
        header has no usable ``NumberOfSlices``.
    """
    number_of_slices = ds.get("NumberOfSlices")
    slice_count = file_count
    if number_of_slices is not None and number_of_slices != "":
        try:
            slice_count = int(number_of_slices)
        except (TypeError, ValueError):
            logger.warning(
                "Unreadable NumberOfSlices %r in %s; using file count %d.",
                number_of_slices,
                files_folder,
                file_count,
            )

    return ImagingRecord(
        patient_name=_text(ds.get("PatientName")),
        patient_id=_text(ds.get("PatientID")),
        accession_number=_text(ds.get("AccessionNumber")),
        study_uid=_text(ds.get("StudyInstanceUID")),
        series_uid=_text(ds.get("SeriesInstanceUID")),
        frame_of_reference_uid=_text(ds.get("FrameOfReferenceUID")),
        modality=_text(ds.get("Modality")),
        scan_role=classify_scan_role(ds),
        orientation=get_orientation(ds),
        is_volumetric=is_volumetric(ds),
        slice_count=slice_count,
        files_folder=str(files_folder),
    )


def records_frame(records: Iterable[ImagingRecord]) -> pd.DataFrame:
    """Return the records as a DataFrame with :data:`RECORD_COLUMNS` columns."""
    rows = [asdict(r) for r in records]
    if not rows:
        return pd.DataFrame(columns=RECORD_COLUMNS)
    return pd.DataFrame(rows, columns=RECORD_COLUMNS)


def _record_from_folder(folder: Path) -> ImagingRecord | None:
    """Return the record of the first readable DICOM file in *folder*, or None."""
    if not folder.is_dir():
        logger.warning("Input folder %s does not exist; skipping.", folder)
        return None

    files = sorted(p for p in folder.iterdir() if p.is_file())
    for path in files:
        try:
            ds = pydicom.dcmread(path, stop_before_pixels=True)
        except (InvalidDicomError, OSError, ValueError) as exc:
            logger.debug("Not a readable DICOM file: %s (%s)", path, exc)
            continue
        return record_from_dataset(ds, folder, len(files))

    logger.warning("No DICOM file found in %s; skipping.", folder)
    return None


def _unique_series(records: list[ImagingRecord]) -> list[ImagingRecord]:
    """Drop records repeating an earlier ``series_uid`` (first one wins)."""
    seen: set[str] = set()
    unique = []
    for record in records:
        if record.series_uid in seen:
            logger.warning(
                "Series %s found again in %s; keeping the first folder only.",
                record.series_uid,
                record.files_folder,
            )
            continue
        seen.add(record.series_uid)
        unique.append(record)
    return unique


def _text(value: Any) -> str:
    """Return a DICOM value as a stripped string; ``None`` becomes ``""``."""
    if value is None:
        return ""
    return str(value).strip()
