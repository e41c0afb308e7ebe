"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from engagement_workflows.engine.store import MemoryStore
from engagement_workflows.engine.service import WorkflowService
from engagement_workflows.engine.workflow.events import Event


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep a developer's `.env` and shell settings out of the tests."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "LOG_LEVEL",
        "WORKFLOW_STORE_BACKEND",
        "WORKFLOW_STATE_PATH",
        "WORKFLOW_DEFAULT_PRIORITY",
        "WORKFLOW_LIST_LIMIT",
        "WORKFLOW_CORS_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store() -> MemoryStore:
    """Provide an empty in-memory object store."""
    return MemoryStore()


@pytest.fixture
def received_events() -> list[Event]:
    """Collects events delivered to the service's listener."""
    return []


@pytest.fixture
def service(store: MemoryStore, received_events: list[Event]) -> WorkflowService:
    """Provide a service over the in-memory store with a recording listener."""
    return WorkflowService(store=store, listeners=[received_events.append])


@pytest.fixture
def onboarding_document() -> dict[str, object]:
    """Two stages, one deliverable each, two tasks per deliverable."""
    return {
        "id": "tpl-onboarding",
        "name": "Onboarding",
        "versions": [
            {
                "version_number": 1,
                "status": "published",
                "stages": [
                    {
                        "id": "st-1",
                        "name": "Discovery",
                        "deliverables": [
                            {
                                "id": "dl-1",
                                "name": "Kickoff",
                                "tasks": [
                                    {
                                        "id": "tk-1a",
                                        "name": "Collect contact",
                                        "data_field_definitions": [
                                            {
                                                "field_code": "contact_email",
                                                "field_name": "Contact email",
                                                "is_required": True,
                                                "save_to_client_field": "primary_email",
                                            }
                                        ],
                                    },
                                    {"id": "tk-1b", "name": "Confirm scope"},
                                ],
                            }
                        ],
                    },
                    {
                        "id": "st-2",
                        "name": "Delivery",
                        "deliverables": [
                            {
                                "id": "dl-2",
                                "name": "Setup",
                                "tasks": [
                                    {"id": "tk-2a", "name": "Provision"},
                                    {"id": "tk-2b", "name": "Handover"},
                                ],
                            }
                        ],
                    },
                ],
            }
        ],
    }


@pytest.fixture
def onboarding_template_id(service: WorkflowService, onboarding_document: dict[str, object]) -> str:
    """Load the onboarding document and return its template id."""
    return service.load_template(onboarding_document).template.id
