import pytest
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from batch_fusion.config import BatchConfig
from batch_fusion.matching import StudyPair
from batch_fusion.records import ImagingRecord

PET_STORAGE = "1.2.840.10008.5.1.4.1.1.128"
CT_STORAGE = "1.2.840.10008.5.1.4.1.1.2"

AXIAL = [1, 0, 0, 0, 1, 0]
CORONAL = [1, 0, 0, 0, 0, -1]
SAGITTAL = [0, 1, 0, 0, 0, -1]


# ---------------------------------------------------------------------------
# Record / pair builders
# ---------------------------------------------------------------------------

def make_record(
    series_uid,
    modality="PT",
    frame="F1",
    study_uid="STUDY1",
    scan_role=None,
    orientation="Axial",
    is_volumetric=True,
    slice_count=100,
    patient_name="DOE^JANE",
    patient_id="P001",
    accession_number="ACC1",
    files_folder=None,
):
    """ImagingRecord that satisfies the default PET/CT rules unless told otherwise."""
    if scan_role is None:
        scan_role = "PET AC" if modality == "PT" else "CT AC"
    return ImagingRecord(
        patient_name=patient_name,
        patient_id=patient_id,
        accession_number=accession_number,
        study_uid=study_uid,
        series_uid=series_uid,
        frame_of_reference_uid=frame,
        modality=modality,
        scan_role=scan_role,
        orientation=orientation,
        is_volumetric=is_volumetric,
        slice_count=slice_count,
        files_folder=files_folder or f"/data/{series_uid}",
    )


def make_pair(
    primary="PT1",
    secondary="CT1",
    primary_slices=100,
    secondary_slices=100,
    study_uid="STUDY1",
    primary_frame="F1",
    secondary_frame="F1",
):
    return StudyPair(
        patient_name="DOE^JANE",
        patient_id="P001",
        accession_number="ACC1",
        study_uid=study_uid,
        primary_series_uid=primary,
        secondary_series_uid=secondary,
        primary_files_folder=f"/data/{primary}",
        secondary_files_folder=f"/data/{secondary}",
        primary_slice_count=primary_slices,
        secondary_slice_count=secondary_slices,
        primary_frame_of_reference_uid=primary_frame,
        secondary_frame_of_reference_uid=secondary_frame,
    )


# ---------------------------------------------------------------------------
# DICOM files on disk
# ---------------------------------------------------------------------------

def write_dicom(path, **attrs):
    """Write a minimal DICOM file (header only) with the given attributes."""
    sop_class = PET_STORAGE if attrs.get("Modality") == "PT" else CT_STORAGE
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = sop_class
    meta.MediaStorageSOPInstanceUID = generate_uid()
    meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = Dataset()
    ds.file_meta = meta
    ds.SOPClassUID = sop_class
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    for keyword, value in attrs.items():
        setattr(ds, keyword, value)

    path.parent.mkdir(parents=True, exist_ok=True)
    ds.save_as(path, enforce_file_format=True)
    return path


def write_series(folder, n_files=3, **attrs):
    """Write *n_files* DICOM files of one series into *folder*."""
    for i in range(n_files):
        write_dicom(folder / f"IM{i:04d}.dcm", InstanceNumber=i + 1, **attrs)
    return folder


def series_attrs(series_uid, modality, frame="1.2.3.100", study_uid="1.2.3.1", description=""):
    return {
        "PatientName": "DOE^JANE",
        "PatientID": "P001",
        "AccessionNumber": "ACC1",
        "StudyInstanceUID": study_uid,
        "SeriesInstanceUID": series_uid,
        "FrameOfReferenceUID": frame,
        "Modality": modality,
        "SeriesDescription": description,
        "ImageOrientationPatient": AXIAL,
        "SliceThickness": "3.0",
    }


@pytest.fixture
def petct_dirs(tmp_path):
    """Two series folders (PET AC + CT AC) of one study sharing a frame of reference."""
    pet = write_series(tmp_path / "input" / "pet", **series_attrs("1.2.3.10", "PT", description="PET WB AC"))
    ct = write_series(tmp_path / "input" / "ct", n_files=5, **series_attrs("1.2.3.20", "CT", description="CT WB"))
    return [pet, ct]


# ---------------------------------------------------------------------------
# Rule file and config
# ---------------------------------------------------------------------------

RULES_XML = """<?xml version="1.0"?>
<Conditions>
    <PET>
        <Modality>PT</Modality>
        <ScanType>PET AC</ScanType>
        <Orientation>Axial</Orientation>
        <Is3D>True</Is3D>
    </PET>
    <CT>
        <Modality>CT</Modality>
        <ScanType>CT AC</ScanType>
        <Orientation>Axial</Orientation>
        <Is3D>True</Is3D>
    </CT>
</Conditions>
"""


@pytest.fixture
def rule_file(tmp_path):
    path = tmp_path / "conditions.xml"
    path.write_text(RULES_XML)
    return path


@pytest.fixture
def cfg(tmp_path):
    """Minimal BatchConfig pointing at a temporary directory tree."""
    return BatchConfig(
        executable=tmp_path / "bin" / "FusionViewer",
        output_dir=tmp_path / "out",
        progress_log=tmp_path / "logs" / "progress.csv",
        error_log=tmp_path / "logs" / "errors.txt",
        poll_interval=0.01,
        log_retry_timeout=0.05,
        log_retry_delay=0.01,
    )
