"""Manifest models and loading."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any

import hcl2
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MANIFEST_FILES = (
    "stackql_manifest.yml",
    "stackql_manifest.yaml",
    "stackql_manifest.hcl",
)


class ResourceType(str, Enum):
    """Supported resource types."""

    RESOURCE = "resource"
    QUERY = "query"
    SCRIPT = "script"
    MULTI = "multi"
    COMMAND = "command"


class GlobalVar(BaseModel):
    """A stack-wide variable rendered once at startup."""

    name: str
    value: Any = None
    description: str = ""


class PropertyValue(BaseModel):
    """An environment-specific property value."""

    value: Any = None


class Property(BaseModel):
    """A resource property, resolved once per resource per run."""

    name: str
    value: Any = None
    values: dict[str, PropertyValue] | None = None
    merge: list[str] | None = None
    description: str = ""

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set

    @model_validator(mode="after")
    def _check_value_source(self) -> Property:
        if self.has_value and self.values is not None:
            raise ValueError(f"property '{self.name}' cannot set both 'value' and 'values'")
        if not self.has_value and self.values is None and self.merge is None:
            raise ValueError(f"property '{self.name}' has no value, values, or merge")
        return self

    def value_for(self, env: str) -> tuple[bool, Any]:
        """Return (found, template) for the given environment."""
        if self.has_value:
            return True, self.value
        if self.values is not None:
            if env not in self.values:
                raise ConfigurationError(
                    f"No value specified for property '{self.name}' in stack_env '{env}'"
                )
            return True, self.values[env].value
        return False, None


class Resource(BaseModel):
    """A named entry in the manifest, processed in declaration order."""

    model_config = {"populate_by_name": True}

    name: str
    type: ResourceType = ResourceType.RESOURCE
    file: str | None = None
    sql: str | None = None
    run: str | None = None
    props: list[Property] = Field(default_factory=list)
    exports: list[str | dict[str, str]] = Field(default_factory=list)
    protected: list[str] = Field(default_factory=list)
    description: str = ""
    condition: str | None = Field(default=None, alias="if")
    skip_validation: bool = False
    auth: Any = None

    @field_validator("exports")
    @classmethod
    def _check_export_style(cls, exports: list[str | dict[str, str]]) -> list[str | dict[str, str]]:
        kinds = {isinstance(item, dict) for item in exports}
        if len(kinds) > 1:
            raise ValueError("exports must be all names or all {column: name} maps, not a mix")
        return exports

    @property
    def query_file(self) -> str:
        return self.file or f"{self.name}.iql"

    @property
    def renames_exports(self) -> bool:
        """True when exports are declared as {source_column: exported_name} maps."""
        return bool(self.exports) and all(isinstance(item, dict) for item in self.exports)

    def export_pairs(self) -> list[tuple[str, str]]:
        """Return (source_column, exported_name) for every declared export."""
        pairs: list[tuple[str, str]] = []
        for item in self.exports:
            if isinstance(item, dict):
                pairs.extend(item.items())
            else:
                pairs.append((item, item))
        return pairs

    def export_names(self) -> list[str]:
        return [name for _, name in self.export_pairs()]


class Manifest(BaseModel):
    """A stack manifest: providers, globals, resources, and stack-level exports."""

    version: int = 1
    name: str
    description: str = ""
    providers: list[str]
    globals: list[GlobalVar] = Field(default_factory=list)
    resources: list[Resource] = Field(default_factory=list)
    exports: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_name(cls, name: str) -> str:
        if not name.strip():
            raise ValueError("manifest name cannot be empty")
        return name

    @field_validator("providers")
    @classmethod
    def _check_providers(cls, providers: list[str]) -> list[str]:
        if not providers:
            raise ValueError("manifest must declare at least one provider")
        return providers

    def find_resource(self, name: str) -> Resource | None:
        return next((r for r in self.resources if r.name == name), None)


def _labeled_blocks(blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Flatten HCL labeled blocks into named dicts.

    HCL2 structure for labeled blocks:
        [{"vpc": {"type": "resource", ...}}, ...]
    """
    items: list[dict[str, Any]] = []
    for block in blocks:
        for label, attrs in block.items():
            items.append({"name": label, **attrs})
    return items


def _from_hcl(data: dict[str, Any]) -> dict[str, Any]:
    """Translate a parsed HCL manifest into the YAML manifest shape."""
    result = {k: v for k, v in data.items() if k not in ("global", "resource")}
    result["globals"] = _labeled_blocks(data.get("global", []))
    resources = []
    for res in _labeled_blocks(data.get("resource", [])):
        props = _labeled_blocks(res.pop("prop", []))
        if props:
            res["props"] = props
        resources.append(res)
    result["resources"] = resources
    return result


def parse_manifest(data: dict[str, Any], *, source: str = "<manifest>") -> Manifest:
    """Validate a parsed manifest document."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: manifest must be a mapping")
    try:
        return Manifest.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"{source}: invalid manifest: {exc}") from exc


def load(file: Path) -> Manifest:
    """Load a single manifest file (YAML or HCL)."""
    logger.debug("Loading manifest '%s'", file)
    text = file.read_text()
    try:
        if file.suffix == ".hcl":
            data = _from_hcl(hcl2.loads(text))
        else:
            data = yaml.safe_load(text)
    except Exception as exc:
        raise ConfigurationError(f"{file}: failed to parse manifest: {exc}") from exc
    return parse_manifest(data, source=str(file))


def load_manifest(stack_dir: str | Path) -> Manifest:
    """Find and load the manifest in a stack directory."""
    stack_dir = Path(stack_dir)
    for filename in MANIFEST_FILES:
        path = stack_dir / filename
        if path.is_file():
            manifest = load(path)
            logger.debug(
                "Loaded stack '%s' with %d resource(s) and providers %s",
                manifest.name,
                len(manifest.resources),
                manifest.providers,
            )
            return manifest
    raise ConfigurationError(f"No manifest found in '{stack_dir}' (expected {MANIFEST_FILES[0]})")
