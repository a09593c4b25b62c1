"""Shared fixtures for bakery tests."""

import logging

import pytest

from bakery.config import Config, StorageConfig, TrackerConfig
from bakery.models import ValidationOutcome, ValidationResult

GENERATOR_OUTPUT = """\
Here is the change proposal you asked for.

=== proposal.md ===
# Change: Add user authentication

## Why
Users cannot sign in, so every page of the portal is public.

## What Changes
- Add a login form
- Add session handling

## Impact
- Affected specs: auth
- Affected code: web/login

=== tasks.md ===
## 1. Implementation
- [ ] 1.1 Create login form
- [ ] 1.2 Add session middleware

## 2. Verification
- [ ] 2.1 Add integration tests

=== specs/auth/spec.md ===
## ADDED Requirements
### Requirement: User Login
The system SHALL let registered users sign in with email and password.

#### Scenario: Valid credentials
- **WHEN** a user submits a valid email and password
- **THEN** a session is created

### Requirement: Session Expiry
The system SHALL expire idle sessions after 30 minutes.

#### Scenario: Idle session
- **WHEN** a session is idle for 30 minutes
- **THEN** the next request is redirected to the login page

Let me know if you want a design.md as well.
"""


@pytest.fixture(autouse=True)
def isolated_env(tmp_path_factory, monkeypatch):
    """Keep the developer's real config and credentials out of every test."""
    for var in ("AZURE_DEVOPS_PAT", "AZURE_DEVOPS_ORG", "AZURE_DEVOPS_PROJECT", "BAKERY_BASE_DIR"):
        monkeypatch.delenv(var, raising=False)
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))

    # the CLI reconfigures the root logger; undo it so later tests log normally
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield home
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def tmp_project(tmp_path):
    """A project directory with a .bakery/ folder and no config yet."""
    project = tmp_path / "project"
    (project / ".bakery").mkdir(parents=True)
    return project


@pytest.fixture
def tracker_config():
    return TrackerConfig(organization="contoso", project="web", pat_token="secret-pat")


@pytest.fixture
def config(tmp_path, tracker_config):
    """Fully configured Config writing under tmp_path/data."""
    return Config(
        tracker=tracker_config,
        storage=StorageConfig(base_directory=str(tmp_path / "data")),
        project_root=str(tmp_path),
    )


@pytest.fixture
def recording_sleep():
    """Async sleep stand-in that records requested delays instead of waiting."""
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def raw_work_item():
    return {
        "id": 111,
        "rev": 3,
        "fields": {
            "System.Title": "Add User Authentication",
            "System.WorkItemType": "User Story",
            "System.State": "New",
            "System.Description": (
                "<div>Users need to <b>log in</b> before using the portal.</div>"
                "<div>Acceptance Criteria: users can sign in</div>"
            ),
            "Microsoft.VSTS.Common.Priority": 2,
            "System.CreatedDate": "2024-01-15T10:30:00.1234567Z",
            "System.ChangedDate": "2024-01-16T08:00:00Z",
            "System.CreatedBy": {"displayName": "Jane Doe", "uniqueName": "jane@contoso.com"},
            "System.AreaPath": "web\\auth",
            "System.IterationPath": "web\\Sprint 4",
            "System.Tags": "auth; web",
        },
        "relations": [],
    }


@pytest.fixture
def empty_comments():
    return {"totalCount": 0, "count": 0, "comments": []}


@pytest.fixture
def generator_output():
    return GENERATOR_OUTPUT


# -------------------------------------------------------------------
# Deterministic stand-ins for the external tools
# -------------------------------------------------------------------

class FakeGenerator:
    def __init__(self, output="", error=None):
        self.output = output
        self.error = error
        self.prompts = []

    async def generate(self, prompt, cwd=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.output


class FakeValidator:
    def __init__(self, result=None, error=None):
        self.result = result or ValidationResult(outcome=ValidationOutcome.PASSED)
        self.error = error
        self.paths = []
        self.prepared = 0

    async def prepare(self):
        self.prepared += 1

    async def validate(self, change_path):
        self.paths.append(change_path)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fake_generator(generator_output):
    return FakeGenerator(generator_output)


@pytest.fixture
def fake_validator():
    return FakeValidator(ValidationResult(
        outcome=ValidationOutcome.PASSED,
        counts={"added": 2},
        output="Change 'add-111-add-user-authentication' is valid\n2 requirements added",
    ))


@pytest.fixture
def make_generator():
    return FakeGenerator


@pytest.fixture
def make_validator():
    return FakeValidator
