"""
Versioned prompt templates for the v9 iris pipeline.

Templates are plain data. Each stage reads its template from a PromptCatalog,
which the admin pipeline configuration can override per step without touching
orchestration code. Placeholders use the {{name}} syntax of core.template.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List

from pydantic import BaseModel

PROMPT_VERSION = "v9"

# --- Stage templates ---

STEP1_GEO_CALIBRATION = """ROLE: iris_geo_calibrator_v9
MODE: image_parse_only
INPUT: single_iris_image
SIDE: {{side}}
IMG_ID: {{imageHash}}

GOAL:
- Decide if image is usable for iris analysis.
- Establish v9 coordinates:
  - minutes 0..59: 12:00=0, 3:00=15, 6:00=30, 9:00=45 (clockwise)
  - 12 rings 0..11 along PUPIL_EDGE -> IRIS_EDGE
  - ring width = 1/12 of reference thickness measured on minute=15 ray

IGNORE:
sclera | pupil interior | eyelashes | eyelids | makeup | glare | reflections

AXIS (CRITICAL):
- Do NOT use upper eyelid as reference.
- Detect limbus ellipse:
  - irisCenter = center of limbus ellipse
  - limbus_left = leftmost visible limbus point
  - limbus_right = rightmost visible limbus point
- Define:
  - ex = normalize(limbus_right - irisCenter)  # 3:00 direction
  - ey = perpendicular(ex) chosen toward image-up  # 12:00 direction

QUALITY GATE:
Set ok=false if any:
- focus="poor"
- limbus edge unreliable OR pupil edge cannot be traced
- >35% iris occluded
- specular/glare covers large portion of ANW region

OUTPUT_JSON ONLY:
{
  "imgId":"{{imageHash}}",
  "side":"{{side}}",
  "ok": true,
  "rejectReasons": [],
  "quality": {
    "score0_100": 0,
    "focus": "good|med|poor",
    "glare": "none|low|med|high",
    "occlusion": "none|low|med|high",
    "issues": []
  },
  "geo": {
    "mins": 60,
    "rings": 12,
    "degPerMin": 6,
    "refMinute": 15,
    "ringGroups": {
      "IPB":[0,0],
      "STOM":[1,1],
      "ANW":[2,3],
      "ORG":[4,9],
      "LYM":[10,10],
      "SCU":[11,11]
    }
  },
  "refRay15Usable": true,
  "usableUpperIris": true,
  "invalidRegions": []
}

FAILSAFE (if cannot comply):
Return ONLY:
{"error":{"stage":"STEP1","code":"FORMAT_FAIL|LOW_QUALITY|NO_LIMBUS|NO_PUPIL_EDGE","message":"short","canRetry":true}}"""

STEP2A_STRUCTURAL_DETECTOR = """ROLE: iris_detector_struct_v9
MODE: image_parse_only
INPUT: single_iris_image
SIDE: {{side}}
GEO: {{step1_json}}

PREREQ:
- If GEO.ok != true: return error JSON (do not continue).

TARGET:
IRIS_STRUCTURE_ONLY (NO meaning, NO diagnosis)

IGNORE:
sclera | pupil interior | lashes | eyelids | makeup | GEO.invalidRegions

DETECT (STRUCTURAL):
- lacuna: oval/leaf gap; breaks fiber flow
- crypt: small deep dark rhomboid/triangular hole
- giant_lacuna: very large lacuna dominating sector
- atrophic_area: locally absent/flattened fiber texture
- collarette_defect_lesion: notch/break on ANW
- radial_furrow: narrow dark radial track from ANW outward
- deep_radial_cleft: wider/deeper radial channel
- transversal_fiber: clear non-radial crossing lines
- structural_asymmetry: strong structural difference between sectors

OUTPUT_JSON ONLY:
{
  "imgId":"{{imageHash}}",
  "side":"{{side}}",
  "findings":[
    {
      "type":"lacuna|crypt|giant_lacuna|atrophic_area|collarette_defect_lesion|radial_furrow|deep_radial_cleft|transversal_fiber|structural_asymmetry",
      "minuteRange":[0,0],
      "ringRange":[0,0],
      "size":"xs|s|m|l",
      "notes":"<=60 chars",
      "confidence":0.0
    }
  ],
  "excluded":[]
}

FAILSAFE:
{"error":{"stage":"STEP2A","code":"PREREQ_FAIL|FORMAT_FAIL","message":"short","canRetry":true}}"""

STEP2B_PIGMENT_RINGS_DETECTOR = """ROLE: iris_detector_pigment_rings_v9
MODE: image_parse_only
INPUT: single_iris_image
SIDE: {{side}}
GEO: {{step1_json}}

PREREQ:
- If GEO.ok != true: return error JSON (do not continue).

TARGET:
IRIS_STRUCTURE_ONLY (NO meaning, NO diagnosis)

DETECT (PIGMENT / PERIPHERY / RINGS):
- pigment_spot (subtype: orange_rust|brown_black|yellow|other)
- pigment_cloud: diffuse haze field
- pigment_band: belt/arc of color
- brushfield_like_spots: tiny light specks near periphery
- nerve_rings: concentric stress arcs
- lymphatic_rosary: chain of pale nodules near outer zone
- scurf_rim: dark peripheral rim (ring 11)
- sodium_ring: pale/milky peripheral ring

GLOBAL TAGS:
- constitution: LYM | HEM | BIL | unclear
- disposition: SILK | LINEN | BURLAP | unclear
- diathesis_tags: HAC | LRS | LIP | DYS

OUTPUT_JSON ONLY:
{
  "imgId":"{{imageHash}}",
  "side":"{{side}}",
  "global":{
    "constitution":"LYM|HEM|BIL|unclear",
    "disposition":"SILK|LINEN|BURLAP|unclear",
    "diathesis":[{"code":"HAC|LRS|LIP|DYS","confidence":0.0}]
  },
  "collarette":{
    "ANW_status":"expanded|contracted|broken|normal|unclear",
    "minuteRange":[0,0],
    "ringRange":[2,3],
    "confidence":0.0
  },
  "findings":[
    {
      "type":"pigment_spot|pigment_cloud|pigment_band|brushfield_like_spots|nerve_rings|lymphatic_rosary|scurf_rim|sodium_ring",
      "subtype":"(pigment_spot only) orange_rust|brown_black|yellow|other",
      "minuteRange":[0,0],
      "ringRange":[0,0],
      "severity":"low|medium|high",
      "notes":"<=60 chars",
      "confidence":0.0
    }
  ],
  "excluded":[]
}

FAILSAFE:
{"error":{"stage":"STEP2B","code":"PREREQ_FAIL|FORMAT_FAIL","message":"short","canRetry":true}}"""

# Used when the admin configuration enables exactly one step
ONE_PROMPT = """ROLE: senior_iridologist | MODE: image+text | TASK: analyze the {{side}} iris and return FINAL JSON for the frontend

INPUT:
IMG_ID = {{imageHash}}
SIDE = {{side}}
PATIENT:
age = {{age}}
gender = {{gender}}
bmi = {{bmi}}
weight_kg = {{weight}}
height_cm = {{height}}
goals = {{goals}}
healthStatus = {{healthStatus}}
complaints = {{complaints}}
diet = {{dietaryHabits}}
stress = {{stressLevel}}
sleep_hours = {{sleepHours}}
sleep_quality = {{sleepQuality}}
activity = {{activityLevel}}
medications = {{medications}}
allergies = {{allergies}}

DETERMINISM:
Same IMG_ID + same PATIENT -> same JSON output.

GEOMETRY:
Angle 0 = 12:00, 90 = 3:00, clockwise 0..360. Twelve fixed 30 degree zones:
1:[0,30] 2:[30,60] 3:[60,90] 4:[90,120] 5:[120,150] 6:[150,180]
7:[180,210] 8:[210,240] 9:[240,270] 10:[270,300] 11:[300,330] 12:[330,360]

ZONE NAMES:
1 "12-1h" 2 "1-2h" 3 "2-3h" 4 "3-4h" 5 "4-5h" 6 "5-6h"
7 "6-7h" 8 "7-8h" 9 "8-9h" 10 "9-10h" 11 "10-11h" 12 "11-12h"

OUTPUT CONSTRAINTS:
- JSON ONLY, no markdown
- zones[].findings <=60 chars, artifacts[].description <=60 chars, systemScores[].description <=60 chars
- at most 5 artifacts
- status enum: normal|attention|concern; severity enum: low|medium|high
- overallHealth and every systemScores[].score between 30 and 100
- systemScores always exactly: Digestive, Immune, Nervous, Cardiovascular, Detox, Endocrine

OUTPUT_JSON ONLY:
{
  "analysis": {
    "zones": [
      {"id": 1, "name": "12-1h", "organ": "organ", "status": "normal|attention|concern", "findings": "short<=60", "angle": [0, 30]}
    ],
    "artifacts": [
      {"type": "type", "location": "3:00-4:00", "description": "short<=60", "severity": "low|medium|high"}
    ],
    "overallHealth": 75,
    "systemScores": [
      {"system": "Digestive", "score": 80, "description": "short<=60"},
      {"system": "Immune", "score": 80, "description": "short<=60"},
      {"system": "Nervous", "score": 80, "description": "short<=60"},
      {"system": "Cardiovascular", "score": 80, "description": "short<=60"},
      {"system": "Detox", "score": 80, "description": "short<=60"},
      {"system": "Endocrine", "score": 80, "description": "short<=60"}
    ]
  }
}

FAILSAFE:
{"error":{"stage":"ONE","code":"FORMAT_FAIL|LOW_QUALITY","message":"short","canRetry":true}}"""


def simple_checksum(text):
    """Cheap order-sensitive checksum shown next to prompts in the admin views"""
    acc = 0
    for i, ch in enumerate(text):
        acc = (acc + ord(ch) * (i + 1)) % 0xFFFFFFFF
    return format(acc, 'x')


@dataclass(frozen=True)
class PromptTemplate:
    stage: str
    step_id: str
    title: str
    source: str
    body: str
    checksum: str = ""

    def __post_init__(self):
        if not self.checksum:
            object.__setattr__(self, 'checksum', simple_checksum(self.body))


@dataclass(frozen=True)
class PromptCatalog:
    version: str
    prompts: Dict[str, PromptTemplate] = field(default_factory=dict)

    def get(self, stage):
        return self.prompts.get(stage)

    def by_step_id(self, step_id):
        for prompt in self.prompts.values():
            if prompt.step_id == step_id:
                return prompt
        return None


class PipelineStepConfig(BaseModel):
    """One admin-editable pipeline step"""
    id: str
    name: str = ""
    prompt: str = ""
    enabled: bool = True
    order: int = 0


class PipelineConfig(BaseModel):
    steps: List[PipelineStepConfig] = []

    def enabled_steps(self):
        return sorted((s for s in self.steps if s.enabled), key=lambda s: s.order)

    def is_single_prompt_mode(self):
        return len(self.enabled_steps()) == 1


def _build(stage, step_id, title, body):
    return PromptTemplate(stage=stage, step_id=step_id, title=title,
                          source=f"builtin:{step_id}", body=body)


DEFAULT_CATALOG = PromptCatalog(
    version=PROMPT_VERSION,
    prompts={
        "STEP1": _build("STEP1", "step1_geo_calibration", "Geometry calibration", STEP1_GEO_CALIBRATION),
        "STEP2A": _build("STEP2A", "step2a_structural_detector", "Structural detector", STEP2A_STRUCTURAL_DETECTOR),
        "STEP2B": _build("STEP2B", "step2b_pigment_rings_detector", "Pigment and rings detector", STEP2B_PIGMENT_RINGS_DETECTOR),
        "ONE": _build("ONE", "one", "Single comprehensive analysis", ONE_PROMPT),
    },
)


def get_prompt_for_stage(stage, catalog=DEFAULT_CATALOG):
    prompt = catalog.get(stage)
    if prompt is None:
        raise KeyError(f"No prompt template registered for stage {stage}")
    return prompt


def apply_pipeline_config(catalog, pipeline_config):
    """
    Return a catalog where enabled admin steps with a non-blank prompt replace
    the default template of the matching step id.
    """
    if pipeline_config is None:
        return catalog

    prompts = dict(catalog.prompts)
    for step in pipeline_config.enabled_steps():
        if not step.prompt.strip():
            continue
        for stage, default in catalog.prompts.items():
            if default.step_id == step.id:
                prompts[stage] = replace(
                    default,
                    title=step.name or default.title,
                    source=f"admin:{step.id}",
                    body=step.prompt,
                    checksum=simple_checksum(step.prompt),
                )
    return PromptCatalog(version=catalog.version, prompts=prompts)


def single_prompt_catalog(catalog, step):
    """Catalog whose ONE template is the prompt of the only enabled admin step"""
    if not step.prompt.strip():
        return catalog
    prompts = dict(catalog.prompts)
    prompts["ONE"] = PromptTemplate(
        stage="ONE",
        step_id=step.id,
        title=step.name or step.id,
        source=f"admin:{step.id}",
        body=step.prompt,
    )
    return PromptCatalog(version=catalog.version, prompts=prompts)


def prompt_summaries(catalog=DEFAULT_CATALOG):
    return [
        {
            "stage": prompt.stage,
            "source": prompt.source,
            "checksum": prompt.checksum,
            "version": catalog.version,
        }
        for prompt in catalog.prompts.values()
    ]
