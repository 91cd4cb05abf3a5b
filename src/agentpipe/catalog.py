"""Built-in stage configurations for the Azure integration agent pipeline.

Two variants exist. ``linear`` hands implementation to a single developer
agent; ``github-issues`` splits it into a planning stage that files issues and
a coding-agent stage that works them. Picking one is the caller's decision.
"""

from __future__ import annotations

from .core import StageSpec
from .errors import ConfigurationError


DISCOVERY_DOCUMENT = "discovery-document"
REQUIREMENTS_DOCUMENT = "requirements-document"
DEV_PLAN = "dev-plan"
DEV_SUMMARY = "dev-summary"
SOURCE_TREE = "source-tree"
ISSUE_BACKLOG = "issue-backlog"
TEST_CONFIG = "test-config"
TEST_RESULTS = "test-results"
README = "readme"
CHANGELOG = "changelog"

ARTIFACT_LOCATIONS: dict[str, str] = {
    DISCOVERY_DOCUMENT: "/specs/docs/IDD.md",
    REQUIREMENTS_DOCUMENT: "/specs/docs/IRD.md",
    DEV_PLAN: "/specs/plans/dev-plan.md",
    DEV_SUMMARY: "/specs/plans/dev-summary.md",
    ISSUE_BACKLOG: "/specs/plans/issues.md",
    SOURCE_TREE: "/src/",
    TEST_CONFIG: "/tests/config/test-config.json",
    TEST_RESULTS: "/tests/reports/test-results.md",
    README: "/README.md",
    CHANGELOG: "/CHANGELOG.md",
}

# Chat-mode role behind each capability
ROLES: dict[str, str] = {
    "discovery-analyst": "Discovery Analyst",
    "solution-architect": "Solution Architect",
    "integration-developer": "Integration Developer",
    "implementation-planner": "Implementation Agent",
    "coding-agent": "GitHub Coding Agent",
    "test-engineer": "Test Engineer",
    "documentation-specialist": "Documentation Specialist",
}

_DISCOVERY = StageSpec(
    name="discovery",
    required_inputs=(),
    produced_outputs=(DISCOVERY_DOCUMENT,),
    capability="discovery-analyst",
    description="Interview stakeholders and write the integration discovery document (IDD).",
)

_ARCHITECTURE = StageSpec(
    name="architecture",
    required_inputs=(DISCOVERY_DOCUMENT,),
    produced_outputs=(REQUIREMENTS_DOCUMENT,),
    capability="solution-architect",
    description="Turn the IDD into the integration requirements document (IRD).",
)

_TESTING = StageSpec(
    name="testing",
    required_inputs=(DEV_SUMMARY, REQUIREMENTS_DOCUMENT),
    produced_outputs=(TEST_CONFIG, TEST_RESULTS),
    capability="test-engineer",
    description="Write and run tests against the requirements; report results.",
)


def _documentation(*inputs: str) -> StageSpec:
    return StageSpec(
        name="documentation",
        required_inputs=inputs,
        produced_outputs=(README, CHANGELOG),
        capability="documentation-specialist",
        description="Write the README and CHANGELOG from every earlier artifact.",
    )


LINEAR: tuple[StageSpec, ...] = (
    _DISCOVERY,
    _ARCHITECTURE,
    StageSpec(
        name="development",
        required_inputs=(DISCOVERY_DOCUMENT, REQUIREMENTS_DOCUMENT),
        produced_outputs=(DEV_PLAN, DEV_SUMMARY, SOURCE_TREE),
        capability="integration-developer",
        description="Plan and scaffold the Bicep, Logic Apps and Functions source tree.",
    ),
    _TESTING,
    _documentation(
        DISCOVERY_DOCUMENT,
        REQUIREMENTS_DOCUMENT,
        DEV_PLAN,
        DEV_SUMMARY,
        SOURCE_TREE,
        TEST_CONFIG,
        TEST_RESULTS,
    ),
)

GITHUB_ISSUES: tuple[StageSpec, ...] = (
    _DISCOVERY,
    _ARCHITECTURE,
    StageSpec(
        name="planning",
        required_inputs=(DISCOVERY_DOCUMENT, REQUIREMENTS_DOCUMENT),
        produced_outputs=(DEV_PLAN, ISSUE_BACKLOG),
        capability="implementation-planner",
        description="Break the IRD into a development plan and GitHub issues.",
    ),
    StageSpec(
        name="coding",
        required_inputs=(DEV_PLAN, ISSUE_BACKLOG, REQUIREMENTS_DOCUMENT),
        produced_outputs=(DEV_SUMMARY, SOURCE_TREE),
        capability="coding-agent",
        description="Work the filed issues and summarise what was built.",
    ),
    _TESTING,
    _documentation(
        DISCOVERY_DOCUMENT,
        REQUIREMENTS_DOCUMENT,
        DEV_PLAN,
        ISSUE_BACKLOG,
        DEV_SUMMARY,
        SOURCE_TREE,
        TEST_CONFIG,
        TEST_RESULTS,
    ),
)

VARIANTS: dict[str, tuple[StageSpec, ...]] = {
    "linear": LINEAR,
    "github-issues": GITHUB_ISSUES,
}


def get_variant(name: str) -> tuple[StageSpec, ...]:
    try:
        return VARIANTS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown pipeline variant '{name}' (choose from: {', '.join(sorted(VARIANTS))})"
        ) from None


def role_for(stage: StageSpec) -> str:
    return ROLES.get(stage.capability, stage.capability)
