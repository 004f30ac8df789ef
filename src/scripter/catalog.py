"""Script catalog loading and run materialization.

A queue file lists script definitions, an optional default queue and
named presets. Queue items reference definitions by uid and may override
the name, arguments, retry count and ignore-previous-failures flag:

    scripts:
      - uid: build
        name: Build
        command: make
        arguments: [all]
      - uid: test
        name: Tests
        command: ./run_tests.sh
        retry_count: 2
    queue:
      - uid: build
      - uid: test
        arguments: ["--fast"]
    presets:
      nightly:
        - uid: build
        - uid: test
          ignore_previous_failures: true

Validation happens here, at load time. The engine only ever sees
well-formed definitions.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from scripter.exceptions import DefinitionError
from scripter.models import QueueEntry, Run, ScriptDefinition


class QueueItem(BaseModel):
    """Reference to a script definition plus per-entry overrides."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: str = Field(..., min_length=1, description="uid of the script definition")
    name: str | None = Field(default=None, description="Display name override")
    arguments: list[str] | None = Field(default=None, description="Arguments override")
    retry_count: int | None = Field(default=None, ge=0, description="Retry count override")
    ignore_previous_failures: bool | None = Field(default=None)


class ScriptCatalog(BaseModel):
    """Validated contents of a queue file."""

    model_config = ConfigDict(extra="forbid")

    scripts: list[ScriptDefinition] = Field(default_factory=list)
    queue: list[QueueItem] = Field(default_factory=list)
    presets: dict[str, list[QueueItem]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_references(self) -> "ScriptCatalog":
        uids: set[str] = set()
        for script in self.scripts:
            if script.uid in uids:
                raise ValueError(f"duplicate script uid '{script.uid}'")
            uids.add(script.uid)

        for item in self.queue:
            if item.uid not in uids:
                raise ValueError(f"queue references unknown script uid '{item.uid}'")
        for preset_name, items in self.presets.items():
            for item in items:
                if item.uid not in uids:
                    raise ValueError(
                        f"preset '{preset_name}' references unknown script uid '{item.uid}'"
                    )
        return self

    def get(self, uid: str) -> ScriptDefinition:
        for script in self.scripts:
            if script.uid == uid:
                return script
        raise KeyError(uid)

    def items_for(self, preset: str | None = None) -> list[QueueItem]:
        """Queue items of a preset, of the default queue, or every script once."""
        if preset is not None:
            if preset not in self.presets:
                raise DefinitionError("catalog", f"unknown preset '{preset}'")
            return list(self.presets[preset])
        if self.queue:
            return list(self.queue)
        return [QueueItem(uid=script.uid) for script in self.scripts]


def load_catalog(path: Path) -> ScriptCatalog:
    """Load and validate a queue file.

    Raises:
        DefinitionError: If the file is missing, not YAML, or fails validation
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise DefinitionError(str(path), f"cannot read file: {e}") from e
    except yaml.YAMLError as e:
        raise DefinitionError(str(path), f"invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise DefinitionError(str(path), "expected a mapping at the top level")

    try:
        return ScriptCatalog.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(str(path), str(e)) from e


def build_entries(catalog: ScriptCatalog, items: list[QueueItem]) -> list[QueueEntry]:
    """Create fresh queue entries for items, applying their overrides."""
    entries = []
    for item in items:
        try:
            definition = catalog.get(item.uid)
        except KeyError as e:
            raise DefinitionError("catalog", f"unknown script uid '{item.uid}'") from e
        entries.append(
            QueueEntry.from_definition(
                definition,
                name=item.name,
                arguments=item.arguments,
                retry_count=item.retry_count,
                ignore_previous_failures=item.ignore_previous_failures,
            )
        )
    return entries


def materialize_run(
    catalog: ScriptCatalog,
    preset: str | None = None,
    *,
    working_directory: Path | None = None,
    install_directory: Path | None = None,
    env: dict[str, str] | None = None,
) -> Run:
    """Build a NotStarted run from a catalog.

    Args:
        catalog: Loaded queue file
        preset: Preset to expand; the default queue is used when omitted
        working_directory: Base for working-dir-relative paths (cwd by default)
        install_directory: Base for install-relative paths (engine config by default)
        env: Environment overlay for every child
    """
    entries = build_entries(catalog, catalog.items_for(preset))
    return Run(
        entries=entries,
        working_directory=working_directory or Path.cwd(),
        install_directory=install_directory,
        env=dict(env or {}),
    )
