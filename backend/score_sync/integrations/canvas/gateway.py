"""
Canvas adapter for the synchronization engine.

Implements the record source, resource provisioner, primary channel and
override channel contracts on top of CanvasClient:

- records are outcome rollups, one record per student
- the primary value is the rubric score of the placeholder assignment,
  which Canvas copies into the aligned outcome
- the override channel is the final grade override, keyed by enrollment id
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from score_sync.core.config import settings
from score_sync.core.errors import FatalRemoteError, SyncTimeoutError
from score_sync.core.interfaces import ResourceRef, ResourceSpec, SyncTarget
from score_sync.integrations.canvas.client import CanvasClient
from score_sync.models.flow import ResourceKind
from score_sync.models.records import Record, SourceMeasurement
from score_sync.schemas.canvas import (
    Assignment, CreatedObject, Enrollment, FinalGradeOverridesResponse, LinkedOutcome,
    OutcomeImport, OutcomeRollupsResponse, Progress
)


logger = logging.getLogger(__name__)


SET_OVERRIDE_MUTATION = """
mutation SetOverride($enrollmentId: ID!, $overrideScore: Float!) {
  setOverrideScore(input: { enrollmentId: $enrollmentId, overrideScore: $overrideScore }) {
    grades { customGradeStatusId overrideScore __typename }
    __typename
  }
}"""


def build_outcome_csv(name: str, mastery_points: float, ratings: Sequence[Mapping[str, Any]],
                      vendor_guid: Optional[str] = None) -> str:
    """Outcome import CSV in the instructure_csv format."""
    vendor_guid = vendor_guid or f"MOREnet_{uuid.uuid4().hex[:8]}"
    ratings_csv = ','.join(f'{r["points"]},"{r["description"]}"' for r in ratings)
    return (
        "vendor_guid,object_type,title,description,calculation_method,mastery_points\n"
        f'"{vendor_guid}",outcome,"{name}","Auto-generated outcome: {name}",latest,'
        f'"{mastery_points}",{ratings_csv}'
    )


class CanvasGateway:
    """All Canvas calls made by a score sync run."""

    def __init__(
        self,
        client: CanvasClient,
        include_overrides: bool = True,
        max_points: Optional[float] = None,
        mastery_points: Optional[float] = None,
        ratings: Optional[List[Dict[str, Any]]] = None,
        import_poll_attempts: int = 15,
        import_poll_interval: float = 2.0
    ):
        self.client = client
        self.include_overrides = include_overrides
        self.max_points = max_points if max_points is not None else settings.DEFAULT_MAX_POINTS
        self.mastery_points = (
            mastery_points if mastery_points is not None else settings.DEFAULT_MASTERY_THRESHOLD
        )
        self.ratings = ratings or settings.OUTCOME_AND_RUBRIC_RATINGS
        self.import_poll_attempts = import_poll_attempts
        self.import_poll_interval = import_poll_interval

    # ------------------------------------------------------------------
    # Record source

    async def get_rollups(self, scope_id: str, outcome_id: Optional[str] = None) -> OutcomeRollupsResponse:
        params = [('include[]', 'outcomes'), ('include[]', 'users')]
        if outcome_id:
            params.insert(0, ('outcome_ids[]', outcome_id))
        body = await self.client.get_all_pages(
            f"/api/v1/courses/{scope_id}/outcome_rollups",
            params=params,
            merge_key='rollups',
            context="get_rollups"
        )
        return OutcomeRollupsResponse.model_validate(body or {})

    async def fetch_records(
        self,
        scope_id: str,
        target_measurement_id: Optional[str] = None,
        correlation_ids: Optional[Mapping[str, str]] = None
    ) -> List[Record]:
        rollups = await self.get_rollups(scope_id)
        titles = rollups.outcome_titles()

        overrides: Mapping[str, float] = {}
        enrollments: Mapping[str, str] = {}
        if self.include_overrides:
            if correlation_ids is None:
                correlation_ids = await self.fetch_correlation_ids(scope_id)
            enrollments = correlation_ids
            overrides = await self.read_overrides(scope_id)

        records = []
        for rollup in rollups.rollups:
            user_id = rollup.links.user
            if not user_id:
                continue

            measurements = []
            target_value = None
            for score in rollup.scores:
                outcome_id = score.links.outcome
                if outcome_id is None:
                    continue
                if target_measurement_id and outcome_id == str(target_measurement_id):
                    target_value = score.score
                measurements.append(SourceMeasurement(
                    measurement_id=outcome_id,
                    record_id=user_id,
                    value=score.score,
                    label=titles.get(outcome_id, score.title or "")
                ))

            enrollment_id = enrollments.get(user_id)
            records.append(Record(
                record_id=user_id,
                target_value=target_value,
                measurements=tuple(measurements),
                override_value=overrides.get(enrollment_id) if enrollment_id else None
            ))

        logger.debug(f"Fetched {len(records)} records for course {scope_id}")
        return records

    # ------------------------------------------------------------------
    # Resource provisioner

    async def _find_outcome(self, spec: ResourceSpec) -> Optional[LinkedOutcome]:
        rollups = await self.get_rollups(spec.scope_id)
        outcome = rollups.find_outcome(spec.name)
        if outcome is None:
            logger.warning(f"Outcome not found: \"{spec.name}\"")
        return outcome

    async def get_assignment(self, scope_id: str, assignment_id: str) -> Assignment:
        body = await self.client.get(
            f"/api/v1/courses/{scope_id}/assignments/{assignment_id}",
            context="get_assignment"
        )
        return Assignment.model_validate(body)

    async def _find_assignment(self, spec: ResourceSpec) -> Optional[Assignment]:
        if spec.outcome_id:
            outcome = None
            rollups = await self.get_rollups(spec.scope_id)
            for candidate in rollups.linked.outcomes:
                if candidate.id == str(spec.outcome_id):
                    outcome = candidate
                    break
            for alignment in (outcome.alignments if outcome else []):
                if not alignment.startswith("assignment_"):
                    continue
                assignment_id = alignment.split("_", 1)[1]
                try:
                    assignment = await self.get_assignment(spec.scope_id, assignment_id)
                except FatalRemoteError as e:
                    logger.debug(f"Skipping alignment {alignment}: {e}")
                    continue
                if assignment.name == spec.name:
                    return assignment

        # fall back to a lookup by name
        found = await self.client.get_all_pages(
            f"/api/v1/courses/{spec.scope_id}/assignments",
            params={'search_term': spec.name},
            context="find_assignment"
        )
        for item in found or []:
            assignment = Assignment.model_validate(item)
            if assignment.name == spec.name:
                logger.debug(f"Fallback assignment found by name: {assignment.id}")
                return assignment

        logger.warning(f"Assignment \"{spec.name}\" not found")
        return None

    async def _find_rubric(self, spec: ResourceSpec) -> Optional[ResourceRef]:
        if not spec.assignment_id:
            return None
        assignment = await self.get_assignment(spec.scope_id, spec.assignment_id)
        settings_ = assignment.rubric_settings
        if not settings_ or settings_.title != spec.name:
            return None
        if not assignment.rubric:
            return None
        return ResourceRef(resource_id=settings_.id, criterion_id=assignment.rubric[0].id)

    async def find_resource(self, spec: ResourceSpec) -> Optional[ResourceRef]:
        if spec.kind == ResourceKind.OUTCOME:
            outcome = await self._find_outcome(spec)
            return ResourceRef(outcome.id) if outcome else None
        if spec.kind == ResourceKind.ASSIGNMENT:
            assignment = await self._find_assignment(spec)
            return ResourceRef(assignment.id) if assignment else None
        if spec.kind == ResourceKind.RUBRIC:
            return await self._find_rubric(spec)
        raise ValueError(f"Unknown resource kind: {spec.kind}")

    async def create_resource(self, spec: ResourceSpec) -> Optional[str]:
        if spec.kind == ResourceKind.OUTCOME:
            return await self._create_outcome(spec)
        if spec.kind == ResourceKind.ASSIGNMENT:
            return await self._create_assignment(spec)
        if spec.kind == ResourceKind.RUBRIC:
            return await self._create_rubric(spec)
        raise ValueError(f"Unknown resource kind: {spec.kind}")

    async def _create_outcome(self, spec: ResourceSpec) -> Optional[str]:
        """Import the outcome as CSV and wait for the import to finish."""
        csv_content = build_outcome_csv(spec.name, self.mastery_points, self.ratings)
        logger.debug("Importing outcome via CSV...")
        body = await self.client.post(
            f"/api/v1/courses/{spec.scope_id}/outcome_imports?import_type=instructure_csv",
            data=csv_content.encode('utf-8'),
            content_type="text/csv",
            context="create_outcome"
        )
        import_id = OutcomeImport.model_validate(body).id
        logger.debug(f"Outcome import started: ID {import_id}")

        for attempt in range(1, self.import_poll_attempts + 1):
            await asyncio.sleep(self.import_poll_interval)
            poll = OutcomeImport.model_validate(await self.client.get(
                f"/api/v1/courses/{spec.scope_id}/outcome_imports/{import_id}",
                context="create_outcome:poll"
            ))
            logger.debug(f"Poll attempt {attempt}: {poll.workflow_state}")

            if poll.workflow_state == "succeeded":
                logger.info(f"Outcome \"{spec.name}\" imported")
                return None
            if poll.workflow_state == "failed":
                raise FatalRemoteError("Outcome import failed")

        raise SyncTimeoutError(
            "Timed out waiting for outcome import to complete",
            timeout_seconds=self.import_poll_attempts * self.import_poll_interval
        )

    async def _create_assignment(self, spec: ResourceSpec) -> str:
        payload = {
            'assignment': {
                'name': spec.name,
                'position': 1,
                'submission_types': ["none"],
                'published': True,
                'notify_of_update': True,
                'points_possible': self.max_points,
                'grading_type': "gpa_scale",
                'omit_from_final_grade': True,
            }
        }
        body = await self.client.post(
            f"/api/v1/courses/{spec.scope_id}/assignments",
            json=payload,
            context="create_assignment"
        )
        assignment = CreatedObject.model_validate(body)
        logger.info(f"Assignment created: {spec.name} ({assignment.id})")
        return assignment.id

    async def _create_rubric(self, spec: ResourceSpec) -> str:
        if not spec.assignment_id or not spec.outcome_id:
            raise FatalRemoteError("Rubric needs both an assignment and an outcome")

        ratings = {
            str(index): {'description': r['description'], 'points': r['points']}
            for index, r in enumerate(self.ratings)
        }
        payload = {
            'rubric': {
                'title': spec.name,
                'free_form_criterion_comments': False,
                'criteria': {
                    "0": {
                        'description': f"{spec.name} criteria was used to create this rubric",
                        'criterion_use_range': False,
                        'points': self.max_points,
                        'mastery_points': self.mastery_points,
                        'learning_outcome_id': spec.outcome_id,
                        'ratings': ratings,
                    }
                }
            },
            'rubric_association': {
                'association_type': "Assignment",
                'association_id': spec.assignment_id,
                'use_for_grading': True,
                'purpose': "grading",
                'hide_points': True,
            }
        }
        body = await self.client.post(
            f"/api/v1/courses/{spec.scope_id}/rubrics",
            json=payload,
            context="create_rubric"
        ) or {}
        rubric = CreatedObject.model_validate(body.get('rubric', body))
        logger.debug(f"Rubric created and linked to outcome: {rubric.id}")
        return rubric.id

    # ------------------------------------------------------------------
    # Primary channel

    async def write_value(self, target: SyncTarget, record_id: str, value: float) -> None:
        time_stamp = datetime.now().strftime("%m/%d/%Y, %I:%M:%S %p")
        payload: Dict[str, Any] = {
            'submission': {
                'posted_grade': str(value),
                'score': value,
            },
            'comment': {
                'text_comment': f"Score: {value}  Updated: {time_stamp}",
            },
        }
        if target.criterion_id:
            payload['rubric_assessment'] = {str(target.criterion_id): {'points': value}}

        await self.client.put(
            f"/api/v1/courses/{target.scope_id}/assignments/{target.assignment_id}"
            f"/submissions/{record_id}",
            json=payload,
            context=f"write_value:{record_id}"
        )

    async def read_values(self, target: SyncTarget, record_ids: Sequence[str]) -> Dict[str, Optional[float]]:
        rollups = await self.get_rollups(target.scope_id, outcome_id=target.outcome_id)
        wanted = {str(r) for r in record_ids}
        values: Dict[str, Optional[float]] = {}
        for rollup in rollups.rollups:
            user_id = rollup.links.user
            if user_id not in wanted:
                continue
            values[user_id] = None
            for score in rollup.scores:
                if score.links.outcome == str(target.outcome_id):
                    values[user_id] = score.score
                    break
        return values

    async def submit_batch(self, target: SyncTarget, values: Mapping[str, float]) -> str:
        time_stamp = datetime.now().strftime("%m/%d/%Y, %I:%M:%S %p")
        grade_data = {}
        for record_id, value in values.items():
            entry: Dict[str, Any] = {
                'posted_grade': value,
                'text_comment': f"Score: {value}  Updated: {time_stamp}",
            }
            if target.criterion_id:
                entry['rubric_assessment'] = {str(target.criterion_id): {'points': value}}
            grade_data[str(record_id)] = entry

        body = await self.client.post(
            f"/api/v1/courses/{target.scope_id}/assignments/{target.assignment_id}"
            f"/submissions/update_grades",
            json={'grade_data': grade_data},
            context="submit_batch"
        )
        progress = Progress.model_validate(body)
        if not progress.id:
            raise FatalRemoteError("Bulk update returned no progress id")
        logger.info(f"Waiting for grading to complete progress ID: {progress.id}")
        return progress.id

    async def read_job_status(self, job_handle: str) -> str:
        body = await self.client.get(f"/api/v1/progress/{job_handle}", context="read_job_status")
        return Progress.model_validate(body).workflow_state

    # ------------------------------------------------------------------
    # Override channel

    async def ensure_overrides_enabled(self, scope_id: str) -> None:
        await self.client.put(
            f"/api/v1/courses/{scope_id}/settings",
            json={'allow_final_grade_override': True},
            context="ensure_overrides_enabled"
        )
        logger.info(f"Final grade override enabled for course {scope_id}")

    async def fetch_correlation_ids(self, scope_id: str) -> Dict[str, str]:
        items = await self.client.get_all_pages(
            f"/api/v1/courses/{scope_id}/enrollments",
            params=[('type[]', 'StudentEnrollment')],
            context="fetch_correlation_ids"
        )
        ids = {}
        for item in items or []:
            enrollment = Enrollment.model_validate(item)
            if enrollment.user_id and enrollment.id:
                ids[enrollment.user_id] = enrollment.id
        logger.debug(f"Fetched {len(ids)} enrollment ids for course {scope_id}")
        return ids

    async def write_override(self, correlation_id: str, value: float) -> None:
        await self.client.graphql(
            SET_OVERRIDE_MUTATION,
            {'enrollmentId': str(correlation_id), 'overrideScore': float(value)},
            context="write_override"
        )

    async def read_overrides(self, scope_id: str) -> Dict[str, float]:
        body = await self.client.get(
            f"/courses/{scope_id}/gradebook/final_grade_overrides",
            context="read_overrides"
        )
        overrides = FinalGradeOverridesResponse.model_validate(body or {}).percentages()
        logger.debug(f"Fetched {len(overrides)} override grades")
        return overrides
