"""Register catalogs and loading/validation of the YAML catalog files."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from thermoctl.core.errors import CatalogLoadError, CatalogValidationError, UnknownRegister
from thermoctl.core.model import FrameLayout, ProtocolGeneration, RegisterEntry, ThermostatSettings

_HEX_RE = re.compile(r"^[0-9a-f]+$")
DEFAULT_GENERATION = "generation1"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise CatalogValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


class RegisterCatalog:
    """Immutable bidirectional mapping between attribute names and register codes."""

    def __init__(self, entries: Iterable[RegisterEntry], *, kind: str = "register") -> None:
        by_name: dict[str, int] = {}
        by_code: dict[int, str] = {}
        for entry in entries:
            if entry.name in by_name:
                raise CatalogValidationError(f"Duplicate {kind} name '{entry.name}'")
            if entry.code in by_code:
                raise CatalogValidationError(
                    f"Duplicate {kind} code {entry.code} ('{by_code[entry.code]}' and '{entry.name}')"
                )
            by_name[entry.name] = entry.code
            by_code[entry.code] = entry.name
        self.kind = kind
        self._by_name = MappingProxyType(by_name)
        self._by_code = MappingProxyType(by_code)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[RegisterEntry]:
        for code in sorted(self._by_code):
            yield RegisterEntry(name=self._by_code[code], code=code)

    def __len__(self) -> int:
        return len(self._by_name)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._by_name)

    def resolve(self, name: str) -> int:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownRegister(f"Unknown {self.kind} '{name}'") from None

    def reverse_resolve(self, code: int) -> str:
        try:
            return self._by_code[code]
        except KeyError:
            raise UnknownRegister(f"Unknown {self.kind} code {code}") from None


@dataclass(frozen=True)
class ProtocolTables:
    """Both register catalogs of one protocol generation, plus its frame layouts."""

    generation: ProtocolGeneration
    individual_registers: RegisterCatalog
    settings_offsets: RegisterCatalog

    @classmethod
    def from_generation(cls, generation: ProtocolGeneration) -> ProtocolTables:
        return cls(
            generation=generation,
            individual_registers=RegisterCatalog(generation.registers, kind="register"),
            settings_offsets=RegisterCatalog(generation.settings_offsets, kind="settings offset"),
        )


def apply_changes(
    record: ThermostatSettings,
    changes: Mapping[str, Any],
    catalog: RegisterCatalog,
) -> ThermostatSettings:
    """Copy the catalogued keys present in `changes` onto `record`."""
    fields = {f.name for f in dataclasses.fields(record)}
    present = {
        name: value
        for name, value in changes.items()
        if name in catalog and name in fields
    }
    if not present:
        return record
    return dataclasses.replace(record, **present)


@dataclass(frozen=True)
class LoadedCatalogs:
    generations: dict[str, ProtocolGeneration]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("thermoctl.schemas").joinpath("catalog.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _catalog_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "thermoctl/catalogs", xdg_data / "thermoctl/catalogs"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogLoadError(f"Could not read catalog file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise CatalogValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise CatalogValidationError(f"Catalog file {path} must contain a mapping at root")
    return loaded


def _normalize_hex(value: str, *, context: str) -> bytes:
    normalized = value.strip().lower().replace(" ", "")
    if len(normalized) == 0:
        raise CatalogValidationError(f"{context} must not be empty")
    if len(normalized) % 2 != 0:
        raise CatalogValidationError(f"{context} must have even-length hex")
    if not _HEX_RE.match(normalized):
        raise CatalogValidationError(f"{context} must contain only [0-9a-f]")
    return bytes.fromhex(normalized)


def _build_layout(raw: dict[str, Any], *, context: str) -> FrameLayout:
    layout = FrameLayout(
        length=int(raw["length"]),
        header=_normalize_hex(raw["header"], context=f"{context}.header"),
        footer=_normalize_hex(raw["footer"], context=f"{context}.footer"),
        checksum_offset=int(raw["checksum_offset"]),
        register_offset=raw.get("register_offset"),
        value_offset=raw.get("value_offset"),
        zero_offsets=tuple(raw.get("zero_offsets", ())),
    )
    payload_start = len(layout.header)
    payload_end = layout.length - len(layout.footer)
    if payload_start >= payload_end:
        raise CatalogValidationError(f"{context} leaves no room between header and footer")

    computed = [layout.checksum_offset, *layout.zero_offsets]
    if layout.register_offset is not None:
        computed.append(layout.register_offset)
    if layout.value_offset is not None:
        computed.append(layout.value_offset)
    for offset in computed:
        if not payload_start <= offset < payload_end:
            raise CatalogValidationError(
                f"{context} offset {offset} overlaps the fixed header/footer bytes"
            )
    return layout


def _build_generation(doc: dict[str, Any], source: Path | Traversable) -> ProtocolGeneration:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise CatalogValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    frames = doc["frames"]
    generation = ProtocolGeneration(
        id=doc["id"],
        name=doc["name"],
        individual=_build_layout(frames["individual"], context=f"{doc['id']}.frames.individual"),
        settings=_build_layout(frames["settings"], context=f"{doc['id']}.frames.settings"),
        status_request=_build_layout(frames["status_request"], context=f"{doc['id']}.frames.status_request"),
        registers=tuple(RegisterEntry(name, code) for name, code in doc["registers"].items()),
        settings_offsets=tuple(RegisterEntry(name, code) for name, code in doc["settings_offsets"].items()),
        offset_register=doc["offset_register"],
    )

    # Builds both catalogs once so duplicate codes fail at load time.
    tables = ProtocolTables.from_generation(generation)
    if generation.offset_register not in tables.individual_registers:
        raise CatalogValidationError(
            f"Offset register '{generation.offset_register}' is not defined in {source}"
        )
    settings = generation.settings
    reserved = {settings.checksum_offset}
    for entry in tables.settings_offsets:
        if not len(settings.header) <= entry.code < settings.length - len(settings.footer):
            raise CatalogValidationError(
                f"Settings offset '{entry.name}' ({entry.code}) lies outside the payload in {source}"
            )
        if entry.code in reserved:
            raise CatalogValidationError(
                f"Settings offset '{entry.name}' collides with the checksum byte in {source}"
            )
    return generation


def _iter_packaged_catalog_paths() -> list[Traversable]:
    catalog_root = resources.files("thermoctl.catalogs")
    return [item for item in catalog_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_catalog_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _catalog_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_catalogs() -> LoadedCatalogs:
    generations: dict[str, ProtocolGeneration] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_catalog_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        generation = _build_generation(doc, path)
        generations[generation.id] = generation

    for path in _iter_user_catalog_paths():
        doc = _read_yaml(path)
        generation = _build_generation(doc, path)
        if generation.id in generations:
            warning = f"User catalog '{generation.id}' overrides packaged catalog"
            LOGGER.warning(warning)
            warnings.append(warning)
        generations[generation.id] = generation

    return LoadedCatalogs(generations=generations, warnings=tuple(warnings))


def load_tables(generation_id: str = DEFAULT_GENERATION) -> tuple[ProtocolTables, tuple[str, ...]]:
    loaded = load_catalogs()
    generation = loaded.generations.get(generation_id)
    if generation is None:
        available = ", ".join(sorted(loaded.generations))
        raise CatalogLoadError(
            f"Unknown protocol generation '{generation_id}'. Available: {available}"
        )
    return ProtocolTables.from_generation(generation), loaded.warnings
