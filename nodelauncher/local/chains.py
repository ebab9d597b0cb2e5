"""
Chain definitions, on-disk locations and the dependency graph between chains.

Definitions are loaded once from the chain table (``chain_config.json``) and are
never mutated afterwards. Every per-platform value is keyed by ``sys.platform``
names: ``linux``, ``darwin`` and ``win32``.
"""

import sys
import json
import logging
from pathlib import Path
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from nodelauncher.errors import ChainConfigError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadinessSpec:
    """How a started chain proves it is ready. No marker and no probe means first output."""
    log_marker: Optional[str] = None
    probe: bool = False


@dataclass(frozen=True)
class ControlSpec:
    """The control endpoint used for readiness probes and graceful stop."""
    kind: str
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    probe_method: Optional[str] = None
    stop_method: Optional[str] = None
    # Poll getblockchaininfo for initial block download progress once running.
    sync_status: bool = False


@dataclass(frozen=True)
class FirstRunSpec:
    """Extra launch arguments used only while ``marker`` is missing from the data dir."""
    marker: str
    args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GithubReleaseSpec:
    """Download location given as a GitHub repository plus per-platform asset name pattern."""
    repo: str
    asset_patterns: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChainDefinition:
    id: str
    display_name: str
    binary: Dict[str, str]
    extract_dir: Dict[str, str]
    data_dir: Dict[str, str] = field(default_factory=dict)
    download_urls: Dict[str, str] = field(default_factory=dict)
    github_release: Optional[GithubReleaseSpec] = None
    dependencies: Tuple[str, ...] = ()
    is_direct_binary: bool = False
    args: Tuple[str, ...] = ()
    first_run: Optional[FirstRunSpec] = None
    readiness: ReadinessSpec = ReadinessSpec()
    control: Optional[ControlSpec] = None
    app_bundle: Dict[str, str] = field(default_factory=dict)
    description: str = ""
    chain_layer: int = 1
    slot: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChainDefinition":
        """
        Builds a definition from one entry of the chain table.

        :param data: The decoded JSON object for a single chain.
        :return: The immutable ChainDefinition.
        :raises ChainConfigError: If required keys are missing or malformed.
        """
        chain_id = data.get("id")
        if not chain_id or not isinstance(chain_id, str):
            raise ChainConfigError(f"Chain entry without a valid 'id': {data!r}")
        for key in ("binary", "extract_dir"):
            if not isinstance(data.get(key), dict) or not data[key]:
                raise ChainConfigError(f"Chain '{chain_id}' needs a per-platform '{key}' mapping")

        release = data.get("github_release")
        readiness = data.get("readiness") or {}
        control = data.get("control")
        first_run = data.get("first_run")
        try:
            return cls(
                id=chain_id,
                display_name=data.get("display_name", chain_id),
                binary=dict(data["binary"]),
                extract_dir=dict(data["extract_dir"]),
                data_dir=dict(data.get("data_dir") or {}),
                download_urls=dict(data.get("download_urls") or {}),
                github_release=GithubReleaseSpec(
                    repo=release["repo"], asset_patterns=dict(release.get("asset_patterns") or {})
                ) if release else None,
                dependencies=tuple(data.get("dependencies") or ()),
                is_direct_binary=bool(data.get("is_direct_binary", False)),
                args=tuple(data.get("args") or ()),
                first_run=FirstRunSpec(
                    marker=first_run["marker"], args=tuple(first_run.get("args") or ())
                ) if first_run else None,
                readiness=ReadinessSpec(
                    log_marker=readiness.get("log_marker"), probe=bool(readiness.get("probe", False))
                ),
                control=ControlSpec(**control) if control else None,
                app_bundle=dict(data.get("app_bundle") or {}),
                description=data.get("description", ""),
                chain_layer=int(data.get("chain_layer", 1)),
                slot=data.get("slot"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainConfigError(f"Invalid definition for chain '{chain_id}': {e}") from e

    def binary_for(self, platform: str) -> Optional[str]:
        return self.binary.get(platform)

    def extract_dir_for(self, platform: str) -> Optional[str]:
        return self.extract_dir.get(platform)

    def data_dir_for(self, platform: str) -> Optional[str]:
        return self.data_dir.get(platform)

    def download_url_for(self, platform: str) -> Optional[str]:
        return self.download_urls.get(platform)

    def app_bundle_for(self, platform: str) -> Optional[str]:
        return self.app_bundle.get(platform)


def load_chain_definitions(path: Path) -> Dict[str, ChainDefinition]:
    """
    Loads the chain table from a JSON file.

    :param path: Path to a JSON document with a top-level "chains" list.
    :return: Definitions keyed by chain id, in file order.
    :raises ChainConfigError: If the file is unreadable, malformed, or repeats an id.
    """
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ChainConfigError(f"Failed to load chain config '{path}': {e}") from e

    entries = document.get("chains") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        raise ChainConfigError(f"Chain config '{path}' has no 'chains' list")

    definitions: Dict[str, ChainDefinition] = {}
    for entry in entries:
        definition = ChainDefinition.from_dict(entry)
        if definition.id in definitions:
            raise ChainConfigError(f"Duplicate chain id '{definition.id}' in '{path}'")
        definitions[definition.id] = definition
    log.debug(f"Loaded {len(definitions)} chain definitions from {path}")
    return definitions


class ChainPaths:
    """
    Resolves where a chain lives on disk for one platform.

    Install dirs (downloaded binaries) sit under ``downloads_dir``; data dirs
    (chain state) sit under ``home_dir`` and are kept separate from binaries.
    """

    def __init__(self, downloads_dir: Path, home_dir: Path, platform: Optional[str] = None):
        self.downloads_dir = Path(downloads_dir)
        self.home_dir = Path(home_dir)
        self.platform = platform or sys.platform

    def _require(self, definition: ChainDefinition, value: Optional[str], what: str) -> str:
        if not value:
            raise ChainConfigError(f"No {what} configured for '{definition.id}' on platform {self.platform}")
        return value

    def install_dir(self, definition: ChainDefinition) -> Path:
        return self.downloads_dir / self._require(definition, definition.extract_dir_for(self.platform), "extract directory")

    def data_dir(self, definition: ChainDefinition) -> Path:
        return self.home_dir / self._require(definition, definition.data_dir_for(self.platform), "data directory")

    def binary_path(self, definition: ChainDefinition) -> Path:
        return self.install_dir(definition) / self._require(definition, definition.binary_for(self.platform), "binary")

    def app_bundle_path(self, definition: ChainDefinition) -> Optional[Path]:
        bundle = definition.app_bundle_for(self.platform)
        return self.install_dir(definition) / bundle if bundle else None


class DependencyGraph:
    """
    Read-only view of which chains must run before which.

    Unknown dependency ids and cycles are rejected on construction.
    """

    def __init__(self, definitions: Mapping[str, ChainDefinition]):
        self._order: List[str] = list(definitions)
        self._dependencies: Dict[str, Tuple[str, ...]] = {}
        self._dependents: Dict[str, List[str]] = {chain_id: [] for chain_id in definitions}

        for chain_id, definition in definitions.items():
            unknown = [dep for dep in definition.dependencies if dep not in definitions]
            if unknown:
                raise ChainConfigError(f"Chain '{chain_id}' depends on unknown chain(s): {', '.join(unknown)}")
            if chain_id in definition.dependencies:
                raise ChainConfigError(f"Chain '{chain_id}' depends on itself")
            self._dependencies[chain_id] = tuple(dict.fromkeys(definition.dependencies))
            for dep in self._dependencies[chain_id]:
                self._dependents[dep].append(chain_id)

        # Raises on cycles.
        self.start_order()

    def __contains__(self, chain_id: str) -> bool:
        return chain_id in self._dependencies

    def dependencies(self, chain_id: str) -> Tuple[str, ...]:
        """Direct dependencies of a chain."""
        return self._dependencies[chain_id]

    def dependents(self, chain_id: str) -> List[str]:
        """Chains that list ``chain_id`` as a direct dependency."""
        return list(self._dependents[chain_id])

    def all_dependents(self, chain_id: str) -> List[str]:
        """Every chain that transitively depends on ``chain_id``."""
        seen: Dict[str, None] = {}
        queue = deque(self._dependents[chain_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen[current] = None
            queue.extend(self._dependents[current])
        return list(seen)

    def start_order(self, chain_ids: Optional[Iterable[str]] = None) -> List[str]:
        """
        Orders chains so that every dependency precedes its dependents.

        Only edges between members of ``chain_ids`` are considered; ties keep
        the chain table's order.

        :param chain_ids: The group to order, defaulting to every chain.
        :return: The group in start order.
        :raises ChainConfigError: On an unknown id or a dependency cycle.
        """
        group = list(dict.fromkeys(chain_ids)) if chain_ids is not None else list(self._order)
        unknown = [chain_id for chain_id in group if chain_id not in self._dependencies]
        if unknown:
            raise ChainConfigError(f"Unknown chain(s): {', '.join(unknown)}")

        members = set(group)
        position = {chain_id: index for index, chain_id in enumerate(self._order)}
        remaining = {
            chain_id: sum(1 for dep in self._dependencies[chain_id] if dep in members)
            for chain_id in group
        }
        ordered: List[str] = []
        ready = sorted((c for c, count in remaining.items() if count == 0), key=position.__getitem__)
        while ready:
            current = ready.pop(0)
            ordered.append(current)
            for dependent in self._dependents[current]:
                if dependent in remaining:
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        ready.append(dependent)
                        ready.sort(key=position.__getitem__)

        if len(ordered) != len(group):
            cyclic = sorted(set(group) - set(ordered), key=position.__getitem__)
            raise ChainConfigError(f"Dependency cycle between: {', '.join(cyclic)}")
        return ordered

    def stop_order(self, chain_ids: Optional[Iterable[str]] = None) -> List[str]:
        """Reverse of ``start_order``: dependents before their dependencies."""
        return list(reversed(self.start_order(chain_ids)))
