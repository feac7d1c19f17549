from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "MatchRule",
    "MatchRuleSet",
    "DEFAULT_RULE_SET",
    "load_rule_set",
]

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from lxml import etree

if TYPE_CHECKING:
    from batch_fusion.records import ImagingRecord


class ConfigurationError(ValueError):
    """The rule file is missing or cannot be interpreted."""


@dataclass(frozen=True)
class MatchRule:
    """Eligibility criteria for one side (primary or secondary) of a pair."""

    modality: str
    scan_role: str
    orientation: str
    is_volumetric: bool

    def matches(self, record: ImagingRecord) -> bool:
        """Return True when *record* satisfies every criterion of this rule.

        String criteria are compared case-insensitively; the volumetric flag
        must be equal.
        """
        return (
            _same(record.modality, self.modality)
            and _same(record.scan_role, self.scan_role)
            and _same(record.orientation, self.orientation)
            and bool(record.is_volumetric) == self.is_volumetric
        )


@dataclass(frozen=True)
class MatchRuleSet:
    """The two rules a pair is built from."""

    primary: MatchRule
    secondary: MatchRule


DEFAULT_RULE_SET = MatchRuleSet(
    primary=MatchRule(modality="PT", scan_role="PET AC", orientation="Axial", is_volumetric=True),
    secondary=MatchRule(modality="CT", scan_role="CT AC", orientation="Axial", is_volumetric=True),
)

# Accepted element names (lower-cased) for each side of the rule file.
_PRIMARY_TAGS = {"primary", "pet"}
_SECONDARY_TAGS = {"secondary", "ct"}

_RULE_FIELDS = {
    "Modality": "modality",
    "ScanType": "scan_role",
    "Orientation": "orientation",
    "Is3D": "is_volumetric",
}


def load_rule_set(path: str | Path) -> MatchRuleSet:
    """Parse an XML rule file into a :class:`MatchRuleSet`.

    Expected layout::

        <Conditions>
            <PET>
                <Modality>PT</Modality>
                <ScanType>PET AC</ScanType>
                <Orientation>Axial</Orientation>
                <Is3D>True</Is3D>
            </PET>
            <CT>
                ...
            </CT>
        </Conditions>

    The primary element may be named ``PET`` or ``Primary`` and the
    secondary one ``CT`` or ``Secondary`` (case-insensitive).  ``Is3D`` is
    true only for the text ``True`` (case-insensitive).

    Raises
    ------
    ConfigurationError
        If the file does not exist, is not well-formed XML, or lacks one of
        the two rule elements or one of their fields.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Rule file not found: {path}")

    try:
        root = etree.parse(str(path)).getroot()
    except (etree.XMLSyntaxError, OSError) as exc:
        raise ConfigurationError(f"Invalid XML in rule file {path}: {exc}") from exc

    primary = secondary = None
    for child in root:
        if not isinstance(child.tag, str):  # comments, processing instructions
            continue
        tag = etree.QName(child).localname.lower()
        if tag in _PRIMARY_TAGS and primary is None:
            primary = _parse_rule(child, path)
        elif tag in _SECONDARY_TAGS and secondary is None:
            secondary = _parse_rule(child, path)

    if primary is None or secondary is None:
        missing = "primary (PET)" if primary is None else "secondary (CT)"
        raise ConfigurationError(f"Rule file {path} has no {missing} rule element")

    return MatchRuleSet(primary=primary, secondary=secondary)


def _parse_rule(node: etree._Element, path: Path) -> MatchRule:
    """Read the four criteria of one rule element."""
    values: dict[str, str] = {}
    for tag, name in _RULE_FIELDS.items():
        text = node.findtext(tag)
        if text is None:
            raise ConfigurationError(
                f"Rule {node.tag!r} in {path} is missing the <{tag}> element"
            )
        values[name] = text.strip()

    return MatchRule(
        modality=values["modality"],
        scan_role=values["scan_role"],
        orientation=values["orientation"],
        is_volumetric=values["is_volumetric"].lower() == "true",
    )


def _same(a: str, b: str) -> bool:
    return str(a).casefold() == str(b).casefold()
