"""
Pydantic schemas for the Canvas payloads read by the gateway.

Canvas returns numeric ids; they are normalised to strings so record and
resource ids compare the same way everywhere.
"""

from pydantic import BaseModel, Field, validator
from typing import Dict, List, Optional, Any


def _id_to_str(v):
    if v is None:
        return v
    return str(v)


class RollupScoreLinks(BaseModel):
    outcome: Optional[str] = None

    @validator('outcome', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class RollupScore(BaseModel):
    score: Optional[Any] = None
    title: Optional[str] = None
    links: RollupScoreLinks = Field(default_factory=RollupScoreLinks)


class RollupLinks(BaseModel):
    user: Optional[str] = None

    @validator('user', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class Rollup(BaseModel):
    links: RollupLinks = Field(default_factory=RollupLinks)
    scores: List[RollupScore] = Field(default_factory=list)


class LinkedOutcome(BaseModel):
    id: str
    title: str = ""
    alignments: List[str] = Field(default_factory=list)

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class RollupLinked(BaseModel):
    outcomes: List[LinkedOutcome] = Field(default_factory=list)


class OutcomeRollupsResponse(BaseModel):
    """GET /courses/:id/outcome_rollups"""
    rollups: List[Rollup] = Field(default_factory=list)
    linked: RollupLinked = Field(default_factory=RollupLinked)

    def outcome_titles(self) -> Dict[str, str]:
        return {o.id: o.title for o in self.linked.outcomes}

    def find_outcome(self, title: str) -> Optional[LinkedOutcome]:
        for outcome in self.linked.outcomes:
            if outcome.title == title:
                return outcome
        return None


class RubricSettings(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class RubricCriterion(BaseModel):
    id: str

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class Assignment(BaseModel):
    id: str
    name: str = ""
    rubric_settings: Optional[RubricSettings] = None
    rubric: Optional[List[RubricCriterion]] = None

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class CreatedObject(BaseModel):
    """Any create response where only the id matters."""
    id: str

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class Progress(BaseModel):
    """GET /progress/:id"""
    id: Optional[str] = None
    workflow_state: str
    completion: Optional[float] = None
    updated_at: Optional[str] = None

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class OutcomeImport(BaseModel):
    id: str
    workflow_state: Optional[str] = None

    @validator('id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class Enrollment(BaseModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    type: Optional[str] = None

    @validator('id', 'user_id', pre=True)
    def normalise_id(cls, v):
        return _id_to_str(v)


class CourseGrade(BaseModel):
    percentage: Optional[float] = None


class FinalGradeOverride(BaseModel):
    course_grade: Optional[CourseGrade] = None


class FinalGradeOverridesResponse(BaseModel):
    """GET /courses/:id/gradebook/final_grade_overrides, keyed by enrollment id"""
    final_grade_overrides: Dict[str, FinalGradeOverride] = Field(default_factory=dict)

    def percentages(self) -> Dict[str, float]:
        result = {}
        for enrollment_id, data in self.final_grade_overrides.items():
            if data.course_grade and data.course_grade.percentage is not None:
                result[str(enrollment_id)] = data.course_grade.percentage
        return result
