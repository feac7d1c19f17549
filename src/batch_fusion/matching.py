"""matching.py — pair primary (PET) and secondary (CT) series of the same study.

A pair is proposed when a primary-rule record and a secondary-rule record of
the same study share a frame of reference.  Pairs are accepted in generation
order under a global dedup (a series is used by at most one pair), then a
swap-correction pass re-assigns secondary series between pairs of the same
study/frame group when slice counts say the rule-based assignment crossed
them over.

Typical usage::

    from batch_fusion.matching import find_matching_studies

    pairs = find_matching_studies(records, config.rule_file)
"""
from __future__ import annotations

__all__ = [
    "StudyPair",
    "PAIR_COLUMNS",
    "match_studies",
    "correct_swapped_pairs",
    "find_matching_studies",
    "pairs_frame",
    "save_pairs",
]

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Iterable, Sequence

import pandas as pd

from batch_fusion.records import ImagingRecord
from batch_fusion.rules import (
    DEFAULT_RULE_SET,
    ConfigurationError,
    MatchRule,
    MatchRuleSet,
    load_rule_set,
)

logger = logging.getLogger(__name__)

@dataclass
class StudyPair:
    """A primary/secondary series pair anchored to one study."""

    patient_name: str
    patient_id: str
    accession_number: str
    study_uid: str
    primary_series_uid: str
    secondary_series_uid: str
    primary_files_folder: str
    secondary_files_folder: str
    primary_slice_count: int
    secondary_slice_count: int
    primary_frame_of_reference_uid: str
    secondary_frame_of_reference_uid: str


#: Column order used for pair tables.
PAIR_COLUMNS: list[str] = [f.name for f in fields(StudyPair)]


def match_studies(records: Sequence[ImagingRecord], rule_set: MatchRuleSet) -> list[StudyPair]:
    """Return the deduplicated, swap-corrected pairs found in *records*.

    Parameters
    ----------
    records:
        Classified records with unique ``series_uid`` values.
    rule_set:
        Primary and secondary eligibility rules.

    Returns
    -------
    list[StudyPair]
        Pairs ordered by the first appearance of their study in *records*,
        then by generation order within the study.  Empty when no record
        satisfies the rules.
    """
    frame_index = _build_frame_index(records, rule_set)
    used: set[str] = set()
    pairs: list[StudyPair] = []

    for study_uid, study_records in _group_by_study(records).items():
        primary_candidates = _candidates(
            study_records, rule_set.primary, frame_index, linked_modality=rule_set.secondary.modality
        )
        secondary_candidates = _candidates(
            study_records, rule_set.secondary, frame_index, linked_modality=rule_set.primary.modality
        )

        for primary, linked_uid in primary_candidates:
            for secondary, _ in secondary_candidates:
                if _key(linked_uid) != _key(secondary.series_uid):
                    continue
                p_key, s_key = _key(primary.series_uid), _key(secondary.series_uid)
                if p_key == s_key or p_key in used or s_key in used:
                    continue
                used.update((p_key, s_key))
                pairs.append(_make_pair(study_uid, primary, secondary))

    logger.debug("Matched %d pair(s) from %d record(s)", len(pairs), len(records))
    return correct_swapped_pairs(pairs)


def correct_swapped_pairs(pairs: list[StudyPair]) -> list[StudyPair]:
    """Swap secondary series between pairs whose slice counts look crossed over.

    Two pairs are compared when they share patient name, patient ID,
    accession number, study UID and both frames of reference.  If the
    primary slice count of the first is closer to the *secondary* count of
    the second than to its primary count, and vice versa, the secondary
    series UID, folder and slice count are exchanged.

    Pairs are visited as ``(i, j)`` with ``i < j`` and swapped in place, so a
    later comparison sees the result of earlier swaps.  *pairs* is returned
    for convenience.
    """
    for i in range(len(pairs) - 1):
        for j in range(i + 1, len(pairs)):
            a, b = pairs[i], pairs[j]
            if _group_key(a) != _group_key(b):
                continue

            d_pp = abs(a.primary_slice_count - b.primary_slice_count)
            d_ps = abs(a.primary_slice_count - b.secondary_slice_count)
            d_sp = abs(a.secondary_slice_count - b.primary_slice_count)
            d_ss = abs(a.secondary_slice_count - b.secondary_slice_count)
            if d_ps < d_pp and d_sp < d_ss:
                logger.info(
                    "Swapping secondary series %s <-> %s (study %s)",
                    a.secondary_series_uid,
                    b.secondary_series_uid,
                    a.study_uid,
                )
                (
                    a.secondary_series_uid, b.secondary_series_uid,
                    a.secondary_files_folder, b.secondary_files_folder,
                    a.secondary_slice_count, b.secondary_slice_count,
                ) = (
                    b.secondary_series_uid, a.secondary_series_uid,
                    b.secondary_files_folder, a.secondary_files_folder,
                    b.secondary_slice_count, a.secondary_slice_count,
                )
    return pairs


def find_matching_studies(
    records: Sequence[ImagingRecord],
    rule_file: str | Path | None = None,
) -> list[StudyPair]:
    """Load the rule set and match *records*.

    The built-in :data:`~batch_fusion.rules.DEFAULT_RULE_SET` is used when
    *rule_file* is ``None``.  A rule file that is missing or malformed is
    logged and yields an empty list, so the batch proceeds with nothing to
    dispatch.
    """
    if rule_file is None:
        rule_set = DEFAULT_RULE_SET
    else:
        try:
            rule_set = load_rule_set(rule_file)
        except ConfigurationError as exc:
            logger.error("Cannot load matching rules: %s", exc)
            return []
    return match_studies(records, rule_set)


def pairs_frame(pairs: Iterable[StudyPair]) -> pd.DataFrame:
    """Return the pairs as a DataFrame with :data:`PAIR_COLUMNS` columns."""
    rows = [asdict(p) for p in pairs]
    if not rows:
        return pd.DataFrame(columns=PAIR_COLUMNS)
    return pd.DataFrame(rows, columns=PAIR_COLUMNS)


def save_pairs(pairs: Iterable[StudyPair], path: str | Path) -> None:
    """Write the pair table to a CSV file, creating parent directories."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    pairs_frame(pairs).to_csv(path, index=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _key(value: str) -> str:
    """Case-insensitive comparison key for UIDs and tags."""
    return str(value).casefold()


def _build_frame_index(
    records: Sequence[ImagingRecord], rule_set: MatchRuleSet
) -> dict[tuple[str, str], list[str]]:
    """Map ``(modality, frame of reference)`` to series UIDs, in record order.

    Only records of either rule's modality are indexed; records without a
    frame-of-reference UID are not.  When both rules name the same modality
    each record is reachable from both sides.
    """
    modalities = {_key(rule_set.primary.modality), _key(rule_set.secondary.modality)}
    index: dict[tuple[str, str], list[str]] = {}
    for record in records:
        modality = _key(record.modality)
        if modality not in modalities or not record.frame_of_reference_uid:
            continue
        index.setdefault((modality, _key(record.frame_of_reference_uid)), []).append(record.series_uid)
    return index


def _group_by_study(records: Sequence[ImagingRecord]) -> dict[str, list[ImagingRecord]]:
    """Group records by study UID, keeping first-appearance order."""
    studies: dict[str, list[ImagingRecord]] = {}
    for record in records:
        studies.setdefault(record.study_uid, []).append(record)
    return studies


def _candidates(
    study_records: Sequence[ImagingRecord],
    rule: MatchRule,
    frame_index: dict[tuple[str, str], list[str]],
    linked_modality: str,
) -> list[tuple[ImagingRecord, str]]:
    """Return ``(record, linked series UID)`` for every rule-matching record.

    A record yields one entry per *linked_modality* series sharing its frame
    of reference; a record with no such series is not a candidate.
    """
    candidates = []
    for record in study_records:
        if not record.frame_of_reference_uid or not rule.matches(record):
            continue
        linked = frame_index.get((_key(linked_modality), _key(record.frame_of_reference_uid)), [])
        candidates.extend((record, uid) for uid in linked)
    return candidates


def _make_pair(study_uid: str, primary: ImagingRecord, secondary: ImagingRecord) -> StudyPair:
    return StudyPair(
        patient_name=primary.patient_name,
        patient_id=primary.patient_id,
        accession_number=primary.accession_number,
        study_uid=study_uid,
        primary_series_uid=primary.series_uid,
        secondary_series_uid=secondary.series_uid,
        primary_files_folder=primary.files_folder,
        secondary_files_folder=secondary.files_folder,
        primary_slice_count=int(primary.slice_count),
        secondary_slice_count=int(secondary.slice_count),
        primary_frame_of_reference_uid=primary.frame_of_reference_uid,
        secondary_frame_of_reference_uid=secondary.frame_of_reference_uid,
    )


def _group_key(pair: StudyPair) -> tuple[str, ...]:
    return (
        pair.patient_name,
        pair.patient_id,
        pair.accession_number,
        pair.study_uid,
        pair.primary_frame_of_reference_uid,
        pair.secondary_frame_of_reference_uid,
    )
