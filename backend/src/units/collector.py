"""
Unit collection.

Turns declared units into the immutable set a run schedules: validates
ids and serial groups, applies filters, and fills retry and timeout
budgets from the run configuration. Units can also be loaded from a YAML
manifest whose entries point at importable work callables.
"""

from __future__ import annotations

import importlib
import re
from pathlib import Path
from typing import Any, Iterable, Sequence

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from testorch.concurrency.config import RunConfig
from testorch.errors import CollectionError
from testorch.units.models import TestUnit, UnitAnnotation

logger = structlog.get_logger(__name__)


class ManifestUnit(BaseModel):
    """One unit entry in a YAML manifest."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    group: str | None = None
    retries: int | None = Field(default=None, ge=0, le=100)
    timeout: float | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)
    annotations: list[UnitAnnotation] = Field(default_factory=list)
    reason: str | None = None
    work: str | None = Field(default=None, pattern=r"^[\w.]+:[\w.]+$")


class Manifest(BaseModel):
    """A YAML manifest of units."""

    model_config = ConfigDict(extra="forbid")

    units: list[ManifestUnit] = Field(min_length=1)


def resolve_work(reference: str) -> Any:
    """
    Import a ``package.module:attribute`` reference.

    Raises:
        CollectionError: If the module or attribute cannot be found
    """
    module_name, _, attribute = reference.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise CollectionError(f"Cannot import work module '{module_name}': {e}") from e

    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise CollectionError(f"Work '{reference}' not found") from e

    if not callable(target):
        raise CollectionError(f"Work '{reference}' is not callable")
    return target


class UnitCollector:
    """Collects and validates the units of a run."""

    def __init__(self, config: RunConfig | None = None) -> None:
        self._config = config or RunConfig()
        self._log = logger.bind(component="unit_collector")

    def collect(
        self,
        units: Iterable[TestUnit],
        grep: str | None = None,
        grep_invert: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> list[TestUnit]:
        """
        Validate, filter and finalize units.

        Serial groups are filtered as a whole: a group is kept when any of
        its members matches. When any unit is annotated with only, the
        other units are dropped before filtering.

        Args:
            units: Declared units, in declaration order
            grep: Keep units whose id or tags match this regex
            grep_invert: Drop units whose id or tags match this regex
            tags: Keep units carrying at least one of these tags

        Returns:
            Units with retry and timeout budgets filled in

        Raises:
            CollectionError: On duplicate ids, interleaved serial groups,
                focused units under forbid_only or invalid filter patterns
        """
        declared = list(units)
        self._validate_unique(declared)
        self._validate_groups(declared)

        selected = self._filter(self._focus(declared), grep, grep_invert, tags)
        collected = [
            unit.with_defaults(self._config.retries, self._config.timeout_seconds)
            for unit in selected
        ]

        self._log.info(
            "Collected units",
            declared=len(declared),
            collected=len(collected),
            groups=len({u.group_id for u in collected if u.group_id is not None}),
        )
        return collected

    def load_manifest(self, path: str | Path) -> list[TestUnit]:
        """Load units from a YAML manifest file."""
        file_path = Path(path)
        if not file_path.exists():
            raise CollectionError(f"File not found: {file_path}")
        if not file_path.is_file():
            raise CollectionError(f"Path is not a file: {file_path}")

        self._log.info("Loading unit manifest", path=str(file_path))
        content = file_path.read_text(encoding="utf-8")
        return self.parse_manifest(content)

    def parse_manifest(self, content: str) -> list[TestUnit]:
        """Parse a YAML manifest string into units (not yet collected)."""
        try:
            raw_data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            if mark:
                raise CollectionError(str(e), line=mark.line + 1, column=mark.column + 1) from e
            raise CollectionError(f"Invalid YAML: {e}") from e

        if not isinstance(raw_data, dict):
            raise CollectionError("YAML root must be a mapping/dictionary")

        try:
            manifest = Manifest.model_validate(raw_data)
        except ValidationError as e:
            error_messages = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                error_messages.append(f"  {loc}: {error['msg']}")
            raise CollectionError(
                "Validation failed:\n" + "\n".join(error_messages)
            ) from e

        units = [self._build_unit(entry) for entry in manifest.units]
        self._log.info("Parsed unit manifest", unit_count=len(units))
        return units

    def _build_unit(self, entry: ManifestUnit) -> TestUnit:
        work = resolve_work(entry.work) if entry.work else None
        try:
            return TestUnit(
                id=entry.id,
                group_id=entry.group,
                max_retries=entry.retries,
                base_timeout_seconds=entry.timeout,
                annotations=frozenset(entry.annotations),
                annotation_reason=entry.reason,
                tags=tuple(entry.tags),
                work=work,
            )
        except ValidationError as e:
            raise CollectionError(f"Invalid unit '{entry.id}': {e}") from e

    def _validate_unique(self, units: Sequence[TestUnit]) -> None:
        seen: set[str] = set()
        duplicates: list[str] = []
        for unit in units:
            if unit.id in seen:
                duplicates.append(unit.id)
            seen.add(unit.id)
        if duplicates:
            raise CollectionError(f"Duplicate unit ids: {', '.join(sorted(set(duplicates)))}")

    def _validate_groups(self, units: Sequence[TestUnit]) -> None:
        """Serial group members must be declared next to each other."""
        closed: set[str] = set()
        current: str | None = None
        for unit in units:
            if unit.group_id != current:
                if current is not None:
                    closed.add(current)
                if unit.group_id in closed:
                    raise CollectionError(
                        f"Serial group '{unit.group_id}' is interleaved with other units"
                    )
                current = unit.group_id

    def _focus(self, units: Sequence[TestUnit]) -> list[TestUnit]:
        """Restrict to units annotated with only, if any; serial groups stay whole."""
        focused = [unit for unit in units if unit.is_focused]
        if not focused:
            return list(units)

        if self._config.forbid_only:
            raise CollectionError(
                "Focused units are not allowed (forbid_only): "
                + ", ".join(unit.id for unit in focused)
            )

        focused_groups = {u.group_id for u in focused if u.group_id is not None}
        self._log.warning("Running focused units only", focused=len(focused))
        return [
            unit
            for unit in units
            if unit.is_focused or (unit.group_id is not None and unit.group_id in focused_groups)
        ]

    def _filter(
        self,
        units: Sequence[TestUnit],
        grep: str | None,
        grep_invert: str | None,
        tags: Sequence[str] | None,
    ) -> list[TestUnit]:
        if grep is None and grep_invert is None and not tags:
            return list(units)

        try:
            include = re.compile(grep) if grep else None
            exclude = re.compile(grep_invert) if grep_invert else None
        except re.error as e:
            raise CollectionError(f"Invalid grep pattern: {e}") from e

        wanted_tags = {t if t.startswith("@") else f"@{t}" for t in tags or ()}

        def matches(unit: TestUnit) -> bool:
            title = " ".join((unit.id, *unit.tags))
            if include is not None and not include.search(title):
                return False
            if exclude is not None and exclude.search(title):
                return False
            if wanted_tags and not wanted_tags.intersection(unit.tags):
                return False
            return True

        kept_groups = {u.group_id for u in units if u.group_id is not None and matches(u)}
        return [
            unit
            for unit in units
            if (unit.group_id in kept_groups if unit.group_id is not None else matches(unit))
        ]
