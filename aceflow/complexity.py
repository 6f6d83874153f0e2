"""
Complexity Scorer - turns a static project description into a complexity score.

The score feeds the timeout policy: more complex projects get longer
timeouts. Scoring is deterministic and never fails; unknown artifacts
contribute nothing.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .models import ComplexityProfile
from .utils.logger import get_logger

logger = get_logger("complexity")


@dataclass(frozen=True)
class Factor:
    """A recognised artifact and how it contributes to the score.

    Presence factors (divisor is None) add a flat weight when the artifact
    exists; count factors add count // divisor.
    """
    name: str
    weight: int = 0
    divisor: int | None = None

    def contribution(self, count: int) -> int:
        count = max(count, 0)
        if self.divisor is None:
            return self.weight if count > 0 else 0
        return count // self.divisor


FACTORS: tuple[Factor, ...] = (
    Factor("package_manifest", weight=2),
    Factor("amplify_backend", weight=5),
    Factor("graphql_schema", weight=3),
    Factor("dockerfile", weight=3),
    Factor("terraform", weight=5),
    Factor("ci_workflows", weight=1),
    Factor("database_migrations", weight=4),
    Factor("functions", divisor=2),
    Factor("dependencies", divisor=10),
    Factor("migration_files", divisor=5),
    Factor("source_files", divisor=50),
)

CATEGORY_WEIGHTS: dict[str, int] = {
    "low-complexity": 0,
    "standard": 0,
    "high-complexity": 10,
    "critical": 20,
}

DEFAULT_CATEGORY = "standard"


@dataclass(frozen=True)
class ProjectDescriptor:
    """Read-only description of a project: artifact name -> count, plus a category label."""
    artifacts: Mapping[str, int] = field(default_factory=dict)
    category: str = DEFAULT_CATEGORY

    @classmethod
    def scan(cls, root: str | Path, category: str = DEFAULT_CATEGORY) -> "ProjectDescriptor":
        """Detect recognised artifacts under a project directory without modifying it."""
        root = Path(root)
        artifacts: dict[str, int] = {}
        if not root.is_dir():
            logger.warning(f"Project root not found, scoring empty descriptor: {root}")
            return cls(artifacts=artifacts, category=category)

        package_json = root / "package.json"
        if package_json.is_file():
            artifacts["package_manifest"] = 1
            artifacts["dependencies"] = _count_dependencies(package_json)
        for name in ("pyproject.toml", "requirements.txt", "Cargo.toml", "go.mod"):
            if (root / name).is_file():
                artifacts["package_manifest"] = 1

        amplify_dir = root / "amplify"
        if amplify_dir.is_dir():
            artifacts["amplify_backend"] = 1
            function_dirs = [p for p in amplify_dir.glob("functions/*") if p.is_dir()]
            handlers = list(amplify_dir.glob("**/handler.ts"))
            artifacts["functions"] = len(function_dirs) + len(handlers)

        schemas = list(root.glob("**/schema.graphql"))
        if schemas:
            artifacts["graphql_schema"] = len(schemas)

        if (root / "Dockerfile").is_file() or list(root.glob("docker-compose*.y*ml")):
            artifacts["dockerfile"] = 1

        tf_files = list(root.glob("*.tf")) + list(root.glob("terraform/**/*.tf"))
        if tf_files:
            artifacts["terraform"] = len(tf_files)

        workflows = root / ".github" / "workflows"
        if workflows.is_dir():
            artifacts["ci_workflows"] = len(list(workflows.glob("*.y*ml")))

        migration_files = 0
        for migrations in ("migrations", "db/migrations", "alembic/versions", "prisma/migrations"):
            path = root / migrations
            if path.is_dir():
                migration_files += sum(1 for p in path.rglob("*") if p.is_file())
        if migration_files:
            artifacts["database_migrations"] = 1
            artifacts["migration_files"] = migration_files

        src = root / "src"
        if src.is_dir():
            artifacts["source_files"] = sum(1 for p in src.rglob("*") if p.is_file())

        return cls(artifacts=artifacts, category=category)


def _count_dependencies(package_json: Path) -> int:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable {package_json.name}, counting no dependencies: {e}")
        return 0
    if not isinstance(data, dict):
        return 0
    total = 0
    for key in ("dependencies", "devDependencies"):
        deps = data.get(key)
        if isinstance(deps, dict):
            total += len(deps)
    return total


def _as_count(value: object) -> int:
    """Unusable artifact counts (None, non-numeric, NaN) count as zero."""
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def score(descriptor: ProjectDescriptor, category: str | None = None) -> ComplexityProfile:
    """Score a project descriptor. `category` overrides the descriptor's own label."""
    label = (category or descriptor.category or DEFAULT_CATEGORY).strip().lower()

    artifacts = descriptor.artifacts or {}
    factors: list[tuple[str, int]] = []
    for factor in FACTORS:
        contribution = factor.contribution(_as_count(artifacts.get(factor.name)))
        if contribution:
            factors.append((factor.name, contribution))

    category_weight = CATEGORY_WEIGHTS.get(label, 0)
    if category_weight:
        factors.append((f"category:{label}", category_weight))

    total = sum(weight for _, weight in factors)
    return ComplexityProfile(score=max(total, 0), factors=tuple(factors), category=label)
