from typing import Annotated, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Side = Literal["left", "right"]
SideCode = Literal["L", "R"]
ZoneStatus = Literal["normal", "attention", "concern"]
Severity = Literal["low", "medium", "high"]

# Clock minutes 0..59, plus 60 as the end of the last sector; ring indices 0..11
Minute = Annotated[int, Field(ge=0, le=60)]
Ring = Annotated[int, Field(ge=0, le=11)]
MinuteRange = Tuple[Minute, Minute]
RingRange = Tuple[Ring, Ring]

STRUCTURAL_TYPES = (
    "lacuna", "crypt", "giant_lacuna", "atrophic_area", "collarette_defect_lesion",
    "radial_furrow", "deep_radial_cleft", "transversal_fiber", "structural_asymmetry",
)
PIGMENT_TYPES = (
    "pigment_spot", "pigment_cloud", "pigment_band", "brushfield_like_spots",
    "nerve_rings", "lymphatic_rosary", "scurf_rim", "sodium_ring",
)
SYSTEM_NAMES = ("Digestive", "Immune", "Nervous", "Cardiovascular", "Detox", "Endocrine")

ZONE_COUNT = 12
ZONE_WIDTH_DEG = 30


class StagePayload(BaseModel):
    """Base for everything parsed out of an LLM stage response."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# --- Stage 1: geometry calibration ---

class QualityAssessment(StagePayload):
    score0_100: float = Field(ge=0, le=100)
    focus: Literal["good", "med", "poor"]
    glare: Literal["none", "low", "med", "high"]
    occlusion: Literal["none", "low", "med", "high"]
    issues: Tuple[str, ...] = ()


class RingGroups(StagePayload):
    IPB: RingRange
    STOM: RingRange
    ANW: RingRange
    ORG: RingRange
    LYM: RingRange
    SCU: RingRange


class GeoReference(StagePayload):
    mins: Literal[60]
    rings: Literal[12]
    deg_per_min: Literal[6] = Field(alias="degPerMin")
    ref_minute: Literal[15] = Field(alias="refMinute")
    ring_groups: RingGroups = Field(alias="ringGroups")


class InvalidRegion(StagePayload):
    type: str
    minute_range: MinuteRange = Field(alias="minuteRange")
    ring_range: RingRange = Field(alias="ringRange")
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class Step1GeoResult(StagePayload):
    img_id: str = Field(default="", alias="imgId")
    side: Optional[SideCode] = None
    ok: bool
    reject_reasons: Tuple[str, ...] = Field(alias="rejectReasons")
    quality: QualityAssessment
    geo: GeoReference
    ref_ray15_usable: bool = Field(default=True, alias="refRay15Usable")
    usable_upper_iris: bool = Field(default=True, alias="usableUpperIris")
    invalid_regions: Tuple[InvalidRegion, ...] = Field(default=(), alias="invalidRegions")


# --- Stage 2: detectors ---

class Finding(StagePayload):
    """One detected iris feature located on the 60-minute / 12-ring grid."""
    type: str
    minute_range: MinuteRange = Field(alias="minuteRange")
    ring_range: RingRange = Field(alias="ringRange")
    notes: str = ""
    confidence: float = Field(ge=0, le=1)
    severity: Optional[Severity] = None
    subtype: Optional[str] = None


class StructuralFinding(Finding):
    type: Literal[STRUCTURAL_TYPES]
    size: Literal["xs", "s", "m", "l"]


class PigmentFinding(Finding):
    type: Literal[PIGMENT_TYPES]
    severity: Severity
    subtype: Optional[Literal["orange_rust", "brown_black", "yellow", "other"]] = None

    @field_validator("subtype", mode="before")
    @classmethod
    def _blank_subtype(cls, value):
        # Templates ask for a subtype on pigment_spot only; blanks mean "absent"
        if value in ("", "none", "null"):
            return None
        return value


class ExcludedRegion(StagePayload):
    type: str
    minute_range: MinuteRange = Field(alias="minuteRange")
    ring_range: RingRange = Field(alias="ringRange")


class Step2StructuralResult(StagePayload):
    img_id: str = Field(default="", alias="imgId")
    side: Optional[SideCode] = None
    findings: Tuple[StructuralFinding, ...]
    excluded: Tuple[ExcludedRegion, ...] = ()


class Diathesis(StagePayload):
    code: Literal["HAC", "LRS", "LIP", "DYS"]
    confidence: float = Field(ge=0, le=1)


class GlobalDisposition(StagePayload):
    constitution: Literal["LYM", "HEM", "BIL", "unclear"]
    disposition: Literal["SILK", "LINEN", "BURLAP", "unclear"]
    diathesis: Tuple[Diathesis, ...] = ()


class CollaretteStatus(StagePayload):
    anw_status: Literal["expanded", "contracted", "broken", "normal", "unclear"] = Field(alias="ANW_status")
    minute_range: MinuteRange = Field(alias="minuteRange")
    ring_range: RingRange = Field(alias="ringRange")
    confidence: float = Field(ge=0, le=1)


class Step2PigmentResult(StagePayload):
    img_id: str = Field(default="", alias="imgId")
    side: Optional[SideCode] = None
    global_: Optional[GlobalDisposition] = Field(default=None, alias="global")
    collarette: Optional[CollaretteStatus] = None
    findings: Tuple[PigmentFinding, ...]
    excluded: Tuple[ExcludedRegion, ...] = ()


# --- Stage failures ---

class StepErrorDetail(StagePayload):
    stage: str
    code: str
    message: str = ""
    can_retry: bool = Field(default=False, alias="canRetry")


class StepError(StagePayload):
    error: StepErrorDetail


# --- Pipeline inputs ---

class QuestionnaireData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    age: int = Field(ge=0, le=130)
    gender: Literal["male", "female", "other"]
    weight: float = Field(gt=0)
    height: float = Field(gt=0)
    goals: Tuple[str, ...] = ()
    complaints: str = ""
    health_status: Tuple[str, ...] = Field(default=(), alias="healthStatus")
    dietary_habits: Tuple[str, ...] = Field(default=(), alias="dietaryHabits")
    stress_level: str = Field(default="", alias="stressLevel")
    sleep_hours: float = Field(default=0, alias="sleepHours")
    sleep_quality: str = Field(default="", alias="sleepQuality")
    activity_level: str = Field(default="", alias="activityLevel")
    medications: str = ""
    allergies: str = ""

    @property
    def bmi(self):
        return self.weight / ((self.height / 100) ** 2)


class IrisImage(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    data_url: str = Field(alias="dataUrl")
    side: Side

    @field_validator("data_url")
    @classmethod
    def _must_be_image_data_url(cls, value):
        if not value.startswith("data:image/"):
            raise ValueError("dataUrl must be a data:image/... URL")
        return value


# --- Report shapes consumed by the UI ---

class IrisZone(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1, le=ZONE_COUNT)
    name: str
    organ: str
    status: ZoneStatus
    findings: str = Field(max_length=60)
    angle: Tuple[int, int]


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    location: str
    description: str = Field(max_length=60)
    severity: Severity


class SystemScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    system: str
    score: int = Field(ge=30, le=100)
    description: str = Field(max_length=60)


class AnalysisContent(BaseModel):
    """Zones, artifacts and scores of one iris, without the side."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    zones: Tuple[IrisZone, ...]
    artifacts: Tuple[Artifact, ...] = Field(max_length=5)
    overall_health: int = Field(alias="overallHealth", ge=30, le=100)
    system_scores: Tuple[SystemScore, ...] = Field(alias="systemScores")

    @model_validator(mode="after")
    def _check_fixed_shape(self):
        if len(self.zones) != ZONE_COUNT:
            raise ValueError(f"expected {ZONE_COUNT} zones, got {len(self.zones)}")
        for index, zone in enumerate(self.zones):
            expected = (index * ZONE_WIDTH_DEG, (index + 1) * ZONE_WIDTH_DEG)
            if zone.id != index + 1 or tuple(zone.angle) != expected:
                raise ValueError(f"zone {index + 1} must be id {index + 1} covering {list(expected)}")
        names = tuple(score.system for score in self.system_scores)
        if sorted(names) != sorted(SYSTEM_NAMES):
            raise ValueError(f"system scores must be exactly {list(SYSTEM_NAMES)}, got {list(names)}")
        return self


class IrisAnalysis(AnalysisContent):
    side: Side


class OnePromptResult(StagePayload):
    """Single-prompt answer: {"analysis": {...}} or the analysis object itself."""
    analysis: AnalysisContent

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_analysis(cls, data):
        if isinstance(data, dict) and "analysis" not in data:
            return {"analysis": data}
        return data


class Recommendation(BaseModel):
    category: Literal["diet", "supplement", "lifestyle"]
    title: str
    description: str
    priority: Literal["high", "medium", "low"]


class SideFailure(BaseModel):
    side: Side
    stage: str
    code: str
    message: str


class AnalysisReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    timestamp: str
    questionnaire_data: QuestionnaireData = Field(alias="questionnaireData")
    left_iris: Optional[IrisAnalysis] = Field(default=None, alias="leftIris")
    right_iris: Optional[IrisAnalysis] = Field(default=None, alias="rightIris")
    left_iris_image: IrisImage = Field(alias="leftIrisImage")
    right_iris_image: IrisImage = Field(alias="rightIrisImage")
    recommendations: List[Recommendation] = []
    summary: str = ""
    failures: List[SideFailure] = []
