"""Template graph seeding from a nested document.

Authoring lives outside the engine. This loader is the thin seam the CLI, the
HTTP API and tests use to put a template graph into the store.

Document shape (JSON)::

    {
      "name": "Onboarding",
      "versions": [
        {"version_number": 1, "status": "published", "stages": [
          {"name": "Discovery", "deliverables": [
            {"name": "Kickoff", "tasks": [
              {"name": "Collect requirements",
               "data_field_definitions": [...],
               "outcome_rules": [...],
               "subitems": [{"name": "..."}]}
            ]}
          ]}
        ]}
      ]
    }

A document with top-level ``stages`` and no ``versions`` describes a single
version 1. Nodes may carry an explicit ``id`` so outcome rules can name them.
Missing ``sequence_order`` values default to the 1-based position.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import pydantic
from pydantic import BaseModel, Field

from engagement_workflows.engine.errors import DependencyError, ValidationError
from engagement_workflows.engine.store import ObjectStore, StoreError, store_errors

from .models import (
    DataFieldDefinition,
    DeliverableTemplate,
    OutcomeRule,
    Record,
    StageTemplate,
    SubitemTemplate,
    TaskTemplate,
    VersionStatus,
    WorkflowTemplate,
    WorkflowTemplateVersion,
    new_id,
)

logger = logging.getLogger(__name__)


class SubitemDocument(BaseModel):
    id: str | None = None
    name: str
    sequence_order: int | None = None


class TaskDocument(BaseModel):
    id: str | None = None
    name: str
    description: str = ""
    instructions: str = ""
    priority: str | None = None
    sequence_order: int | None = None
    data_field_definitions: list[DataFieldDefinition] = Field(default_factory=list)
    outcome_rules: list[OutcomeRule] | None = None
    subitems: list[SubitemDocument] = Field(default_factory=list)


class DeliverableDocument(BaseModel):
    id: str | None = None
    name: str
    description: str = ""
    sequence_order: int | None = None
    tasks: list[TaskDocument] = Field(default_factory=list)


class StageDocument(BaseModel):
    id: str | None = None
    name: str
    description: str = ""
    owner_ref: str | None = None
    sequence_order: int | None = None
    deliverables: list[DeliverableDocument] = Field(default_factory=list)


class VersionDocument(BaseModel):
    version_number: int | None = None
    status: VersionStatus = VersionStatus.DRAFT
    stages: list[StageDocument] = Field(default_factory=list)


class TemplateDocument(BaseModel):
    id: str | None = None
    name: str
    description: str = ""
    owner_type: str = "user"
    owner_id: str | None = None
    versions: list[VersionDocument] = Field(default_factory=list)
    stages: list[StageDocument] = Field(default_factory=list)

    def effective_versions(self) -> list[VersionDocument]:
        if self.versions:
            return self.versions
        return [VersionDocument(version_number=1, stages=self.stages)]


class _Ordered(Protocol):
    @property
    def sequence_order(self) -> int | None: ...


@dataclass(frozen=True, slots=True)
class LoadedTemplate:
    template: WorkflowTemplate
    versions: list[WorkflowTemplateVersion]
    stages: int
    deliverables: int
    tasks: int

    def to_json(self) -> dict[str, object]:
        return {
            "workflow_template": self.template.model_dump(mode="json"),
            "versions": [v.model_dump(mode="json") for v in self.versions],
            "stages": self.stages,
            "deliverables": self.deliverables,
            "tasks": self.tasks,
        }


def _sequence(nodes: Sequence[_Ordered], where: str) -> list[int]:
    orders = [
        n.sequence_order if n.sequence_order is not None else i
        for i, n in enumerate(nodes, 1)
    ]
    seen: set[int] = set()
    for order in orders:
        if order in seen:
            raise ValidationError(f"Duplicate sequence_order {order} in {where}")
        seen.add(order)
    return orders


def parse_template_document(raw: object) -> TemplateDocument:
    try:
        return TemplateDocument.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid template document: {e}") from e


class TemplateLoader:
    def __init__(self, *, store: ObjectStore) -> None:
        self._store = store

    def load(self, raw: object) -> LoadedTemplate:
        document = parse_template_document(raw)
        versions = document.effective_versions()
        version_numbers = _version_numbers(versions)
        plan = self._plan(document, versions, version_numbers)

        with store_errors("load template"):
            if self._store.get(WorkflowTemplate, plan.template.id) is not None:
                raise ValidationError(f"Workflow template already exists: {plan.template.id}")
            taken = [
                f"{r.entity_type} {r.id!r}"
                for r in plan.records
                if self._store.get(type(r), r.id) is not None
            ]
            if taken:
                raise ValidationError(f"Template node ids already in use: {', '.join(taken)}")

        created: list[Record] = []
        try:
            for record in plan.records:
                created.append(self._store.create(record))
        except StoreError as e:
            self._discard(created)
            raise DependencyError(f"Failed to load template: {e}") from e

        logger.info(
            "Template loaded",
            extra={
                "workflow_template_id": plan.template.id,
                "versions": len(plan.versions),
                "stages": plan.stages,
                "deliverables": plan.deliverables,
                "tasks": plan.tasks,
            },
        )
        return LoadedTemplate(
            template=plan.template,
            versions=plan.versions,
            stages=plan.stages,
            deliverables=plan.deliverables,
            tasks=plan.tasks,
        )

    def _plan(
        self,
        document: TemplateDocument,
        versions: list[VersionDocument],
        version_numbers: list[int],
    ) -> _Plan:
        # Validate the whole graph before writing anything.
        template = WorkflowTemplate(
            id=document.id or new_id(),
            name=document.name,
            description=document.description,
            owner_type=document.owner_type,
            owner_id=document.owner_id,
        )
        plan = _Plan(template=template, records=[template])

        for version_doc, number in zip(versions, version_numbers, strict=True):
            version = WorkflowTemplateVersion(
                workflow_template_id=template.id,
                version_number=number,
                status=version_doc.status,
            )
            plan.versions.append(version)
            plan.records.append(version)

            stage_orders = _sequence(version_doc.stages, f"version {number}")
            for stage_doc, stage_order in zip(version_doc.stages, stage_orders, strict=True):
                stage = StageTemplate(
                    id=stage_doc.id or new_id(),
                    version_id=version.id,
                    sequence_order=stage_order,
                    name=stage_doc.name,
                    description=stage_doc.description,
                    owner_ref=stage_doc.owner_ref,
                )
                plan.records.append(stage)
                plan.stages += 1

                deliverable_orders = _sequence(stage_doc.deliverables, f"stage {stage.name!r}")
                for deliverable_doc, deliverable_order in zip(
                    stage_doc.deliverables, deliverable_orders, strict=True
                ):
                    deliverable = DeliverableTemplate(
                        id=deliverable_doc.id or new_id(),
                        stage_template_id=stage.id,
                        sequence_order=deliverable_order,
                        name=deliverable_doc.name,
                        description=deliverable_doc.description,
                    )
                    plan.records.append(deliverable)
                    plan.deliverables += 1

                    task_orders = _sequence(
                        deliverable_doc.tasks, f"deliverable {deliverable.name!r}"
                    )
                    for task_doc, task_order in zip(
                        deliverable_doc.tasks, task_orders, strict=True
                    ):
                        task = TaskTemplate(
                            id=task_doc.id or new_id(),
                            deliverable_template_id=deliverable.id,
                            sequence_order=task_order,
                            name=task_doc.name,
                            description=task_doc.description,
                            instructions=task_doc.instructions,
                            priority=task_doc.priority,
                            data_field_definitions=task_doc.data_field_definitions,
                            outcome_rules=task_doc.outcome_rules,
                        )
                        plan.records.append(task)
                        plan.tasks += 1

                        subitem_orders = _sequence(task_doc.subitems, f"task {task.name!r}")
                        for subitem_doc, subitem_order in zip(
                            task_doc.subitems, subitem_orders, strict=True
                        ):
                            plan.records.append(
                                SubitemTemplate(
                                    id=subitem_doc.id or new_id(),
                                    task_template_id=task.id,
                                    sequence_order=subitem_order,
                                    name=subitem_doc.name,
                                )
                            )
        _reject_duplicate_ids(plan.records)
        return plan

    def _discard(self, created: list[Record]) -> None:
        for record in reversed(created):
            try:
                self._store.delete(type(record), record.id)
            except StoreError:
                logger.exception(
                    "Failed to discard partially loaded template node",
                    extra={"entity_type": record.entity_type, "record_id": record.id},
                )


@dataclass(slots=True)
class _Plan:
    template: WorkflowTemplate
    records: list[Record]
    versions: list[WorkflowTemplateVersion] = field(default_factory=list)
    stages: int = 0
    deliverables: int = 0
    tasks: int = 0


def _version_numbers(versions: list[VersionDocument]) -> list[int]:
    numbers = [
        v.version_number if v.version_number is not None else i
        for i, v in enumerate(versions, 1)
    ]
    if len(set(numbers)) != len(numbers):
        raise ValidationError("Duplicate version_number in template document")
    return numbers


def _reject_duplicate_ids(records: list[Record]) -> None:
    seen: set[tuple[str, str]] = set()
    for record in records:
        key = (record.entity_type, record.id)
        if key in seen:
            raise ValidationError(f"Duplicate {record.entity_type} id {record.id!r} in template")
        seen.add(key)
