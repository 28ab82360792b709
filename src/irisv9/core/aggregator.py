"""
Finding Aggregator
Turns calibration + detector payloads into the fixed report shape:
12 clock zones, up to 5 artifacts, 6 system scores and an overall score.
Pure and deterministic; reads its inputs, never mutates them.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Tuple

from irisv9.models.schemas import (
    SYSTEM_NAMES,
    ZONE_COUNT,
    ZONE_WIDTH_DEG,
    Artifact,
    IrisAnalysis,
    IrisZone,
    SystemScore,
)

MINUTES_PER_DEGREE = 1 / 6
CLEAR_ZONE_TEXT = "Visually clear zone"

ZONE_NAMES = (
    "12-1h", "1-2h", "2-3h", "3-4h", "4-5h", "5-6h",
    "6-7h", "7-8h", "8-9h", "9-10h", "10-11h", "11-12h",
)

ZONE_ORGANS = (
    "Brain/CNS", "Pituitary", "Thyroid", "Lungs",
    "Liver", "Stomach", "Pancreas", "Kidneys",
    "Adrenals", "Heart", "Spleen", "Lymphatic system",
)

# Zone ids feeding each system score
SYSTEM_ZONES: Dict[str, Tuple[int, ...]] = {
    "Digestive": (5, 6, 7),
    "Immune": (11, 12),
    "Nervous": (1,),
    "Cardiovascular": (10,),
    "Detox": (5, 8),
    "Endocrine": (2, 3, 9),
}


@dataclass(frozen=True)
class ScoringPolicy:
    """Tuning constants of zone status, artifact ranking and scoring"""
    artifact_min_confidence: float = 0.6
    concern_confidence: float = 0.8
    max_artifacts: int = 5
    text_limit: int = 60
    base_score: int = 85
    concern_penalty: int = 15
    attention_penalty: int = 8
    overall_concern_penalty: int = 5
    overall_attention_penalty: int = 2
    min_score: int = 30
    max_score: int = 100

    @classmethod
    def from_config(cls, config):
        """Build from the 'scoring' section of the loaded config; unknown keys are ignored"""
        section = config.get('scoring', {})
        known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def clamp(self, score):
        return max(self.min_score, min(self.max_score, score))


DEFAULT_POLICY = ScoringPolicy()


class RangeNormalizer:
    """Wraps minute ranges onto the clock and clamps ring ranges to the grid."""

    def __init__(self, mins=60, rings=12):
        self.mins = mins
        self.max_ring = rings - 1

    @classmethod
    def for_geo(cls, geo):
        if geo is None:
            return cls()
        return cls(mins=geo.geo.mins, rings=geo.geo.rings)

    def normalize_minute_range(self, minute_range) -> List[Tuple[int, int]]:
        start = minute_range[0] % self.mins
        end = minute_range[1] % self.mins
        if end == 0 and minute_range[1] > minute_range[0]:
            # Ends on 12 o'clock from below
            end = self.mins
        if start <= end:
            return [(start, end)]
        # Crosses 12 o'clock
        return [(start, self.mins - 1), (0, end)]

    def normalize_ring_range(self, ring_range) -> Tuple[int, int]:
        start = max(0, min(self.max_ring, ring_range[0]))
        end = max(0, min(self.max_ring, ring_range[1]))
        return (start, end) if start <= end else (end, start)


def round_half_up(value):
    return int(math.floor(value + 0.5))


def truncate(text, limit):
    return text[:limit]


def minute_to_clock(minute):
    """Clock-minute (0..60) to "H:MM", five minutes per hour unit"""
    hour = minute // 5
    mins = (minute % 5) * 12
    return f"{hour}:{mins:02d}"


def zone_minute_range(index):
    start_angle = index * ZONE_WIDTH_DEG
    end_angle = (index + 1) * ZONE_WIDTH_DEG
    return round(start_angle * MINUTES_PER_DEGREE), round(end_angle * MINUTES_PER_DEGREE)


def range_overlaps_zone(f_start, f_end, z_start, z_end):
    return ((z_start <= f_start < z_end)
            or (z_start < f_end <= z_end)
            or (f_start <= z_start and f_end >= z_end))


def _finding_in_zone(finding, normalizer, z_start, z_end):
    return any(
        range_overlaps_zone(start, end, z_start, z_end)
        for start, end in normalizer.normalize_minute_range(finding.minute_range)
    )


def _structural_text(finding):
    return f"{finding.type}: {finding.notes}" if finding.notes else finding.type


def _pigment_text(finding):
    return f"{finding.type} ({finding.subtype})" if finding.subtype else finding.type


def _findings_of(result):
    return tuple(result.findings) if result is not None else ()


def map_findings_to_zones(geo, structural, pigment, policy=DEFAULT_POLICY):
    """
    Build the 12 fixed zones.

    A zone is 'concern' when any overlapping finding has high severity or
    confidence above policy.concern_confidence, 'attention' when any finding
    overlaps, and 'normal' otherwise.
    """
    normalizer = RangeNormalizer.for_geo(geo)
    structural_findings = _findings_of(structural)
    pigment_findings = _findings_of(pigment)

    zones = []
    for index in range(ZONE_COUNT):
        z_start, z_end = zone_minute_range(index)
        in_structural = [f for f in structural_findings if _finding_in_zone(f, normalizer, z_start, z_end)]
        in_pigment = [f for f in pigment_findings if _finding_in_zone(f, normalizer, z_start, z_end)]
        overlapping = in_structural + in_pigment

        status = "normal"
        if overlapping:
            is_concern = any(
                f.severity == "high" or f.confidence > policy.concern_confidence
                for f in overlapping
            )
            status = "concern" if is_concern else "attention"

        descriptions = [_structural_text(f) for f in in_structural] + [_pigment_text(f) for f in in_pigment]
        text = truncate("; ".join(descriptions[:2]), policy.text_limit) if descriptions else CLEAR_ZONE_TEXT

        zones.append(IrisZone(
            id=index + 1,
            name=ZONE_NAMES[index],
            organ=ZONE_ORGANS[index],
            status=status,
            findings=text,
            angle=(index * ZONE_WIDTH_DEG, (index + 1) * ZONE_WIDTH_DEG),
        ))
    return zones


def select_artifacts(structural, pigment, policy=DEFAULT_POLICY):
    """Top findings by confidence across both detectors, reshaped for display"""
    pool = [f for f in _findings_of(structural) + _findings_of(pigment)
            if f.confidence >= policy.artifact_min_confidence]
    # sorted() is stable: ties keep structural-before-pigment detector order
    ranked = sorted(pool, key=lambda f: f.confidence, reverse=True)[:policy.max_artifacts]

    artifacts = []
    for finding in ranked:
        start_clock = minute_to_clock(finding.minute_range[0])
        end_clock = minute_to_clock(finding.minute_range[1])
        location = start_clock if start_clock == end_clock else f"{start_clock}-{end_clock}"
        artifacts.append(Artifact(
            type=finding.type,
            location=location,
            description=truncate(finding.notes or finding.type, policy.text_limit),
            severity=finding.severity or "medium",
        ))
    return artifacts


def calculate_system_scores(zones, policy=DEFAULT_POLICY):
    status_by_id = {zone.id: zone.status for zone in zones}
    scores = []
    for system in SYSTEM_NAMES:
        statuses = [status_by_id.get(zone_id) for zone_id in SYSTEM_ZONES[system]]
        concern_count = statuses.count("concern")
        attention_count = statuses.count("attention")

        score = policy.base_score
        score -= concern_count * policy.concern_penalty
        score -= attention_count * policy.attention_penalty

        if concern_count:
            description = f"{concern_count} zones need attention"
        elif attention_count:
            description = f"{attention_count} zones to monitor"
        else:
            description = "Good condition"

        scores.append(SystemScore(system=system, score=policy.clamp(score), description=description))
    return scores


def calculate_overall_health(zones, system_scores, policy=DEFAULT_POLICY):
    """Mean system score minus a penalty for every flagged zone on the whole iris"""
    average = sum(s.score for s in system_scores) / len(system_scores)
    concern_zones = sum(1 for z in zones if z.status == "concern")
    attention_zones = sum(1 for z in zones if z.status == "attention")

    overall = round_half_up(average)
    overall -= concern_zones * policy.overall_concern_penalty
    overall -= attention_zones * policy.overall_attention_penalty
    return policy.clamp(overall)


def aggregate(geo, structural, pigment, side, policy=DEFAULT_POLICY):
    """
    Combine stage outputs for one side into an IrisAnalysis.

    Args:
        geo: Step1GeoResult (supplies the minute/ring grid).
        structural: Step2StructuralResult or None.
        pigment: Step2PigmentResult or None.
        side: 'left' or 'right'.
        policy: ScoringPolicy thresholds.
    """
    zones = map_findings_to_zones(geo, structural, pigment, policy)
    artifacts = select_artifacts(structural, pigment, policy)
    system_scores = calculate_system_scores(zones, policy)
    overall = calculate_overall_health(zones, system_scores, policy)

    return IrisAnalysis(
        side=side,
        zones=zones,
        artifacts=artifacts,
        overall_health=overall,
        system_scores=system_scores,
    )
