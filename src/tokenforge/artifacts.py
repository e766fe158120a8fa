from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from .errors import ArtifactNotFound, InvalidInput, InvalidModuleCombination, UnknownArtifact

# Feature modules with a prebuilt variant, per token kind.
ALLOWED_MODULES: dict[str, frozenset[str]] = {
    "ERC20": frozenset({"burnable", "mintable", "pausable", "governance"}),
    "ERC721": frozenset({"burnable", "mintable", "pausable"}),
    "ERC1155": frozenset({"burnable", "mintable", "pausable"}),
}

# Modules that only exist as a variant of their own.
STANDALONE_MODULES: dict[str, frozenset[str]] = {
    "ERC20": frozenset({"governance"}),
}

ARTIFACT_SUFFIX = ".json"
VERIFY_SUFFIX = ".verify.json"


def normalize_kind(kind: object) -> str:
    text = str(kind if kind is not None else "").strip().upper()
    if not text:
        raise InvalidInput("Token kind is required")
    return text


def normalize_modules(modules: Iterable[object] | None) -> list[str]:
    cleaned = {str(module).strip().lower() for module in (modules or [])}
    cleaned.discard("")
    return sorted(cleaned)


def resolve_artifact_key(kind: object, modules: Iterable[object] | None = None) -> str:
    kind_name = normalize_kind(kind)
    normalized = normalize_modules(modules)
    if not normalized:
        return f"{kind_name}__base"
    return f"{kind_name}__{'_'.join(normalized)}"


def validate_modules(kind: object, modules: Iterable[object] | None) -> list[str]:
    """Check the module set against the static allow-list for `kind`.

    Returns the normalized module list. Touches neither disk nor network.
    """
    kind_name = normalize_kind(kind)
    allowed = ALLOWED_MODULES.get(kind_name)
    if allowed is None:
        supported = ", ".join(sorted(ALLOWED_MODULES))
        raise InvalidInput(f"Unsupported token kind: {kind_name} (expected one of {supported})")

    normalized = normalize_modules(modules)
    unsupported = [module for module in normalized if module not in allowed]
    if unsupported:
        raise InvalidModuleCombination(kind_name, unsupported, "Unsupported modules")

    standalone = STANDALONE_MODULES.get(kind_name, frozenset())
    if len(normalized) > 1:
        conflicting = [module for module in normalized if module in standalone]
        if conflicting:
            raise InvalidModuleCombination(kind_name, normalized, "Standalone module cannot be combined")
    return normalized


class ArtifactStore:
    """Read-only view over the precompiled artifact directory.

    Each key has `<key>.json` with `abi` and `bytecode`, and `<key>.verify.json`
    with the compiler version and standard JSON input used to build it.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def artifact_path(self, artifact_key: str) -> Path:
        return self.root / f"{artifact_key}{ARTIFACT_SUFFIX}"

    def verify_payload_path(self, artifact_key: str) -> Path:
        return self.root / f"{artifact_key}{VERIFY_SUFFIX}"

    def exists(self, artifact_key: str) -> bool:
        return self.artifact_path(artifact_key).is_file() and self.verify_payload_path(artifact_key).is_file()

    def require(self, artifact_key: str) -> Path:
        if not self.exists(artifact_key):
            raise UnknownArtifact(f"No precompiled build for artifact key: {artifact_key}")
        return self.artifact_path(artifact_key)

    def list_keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        keys = []
        for path in self.root.glob(f"*{ARTIFACT_SUFFIX}"):
            if path.name.endswith(VERIFY_SUFFIX):
                continue
            key = path.name[: -len(ARTIFACT_SUFFIX)]
            if self.verify_payload_path(key).is_file():
                keys.append(key)
        return sorted(keys)

    def load_artifact(self, artifact_key: str) -> dict[str, Any]:
        path = self.artifact_path(artifact_key)
        artifact = _read_json(path, ArtifactNotFound)
        if not isinstance(artifact.get("abi"), list) or not artifact.get("bytecode"):
            raise ArtifactNotFound(f"Artifact missing abi or bytecode: {path}")
        return artifact

    def load_verify_payload(self, artifact_key: str) -> dict[str, Any]:
        path = self.verify_payload_path(artifact_key)
        payload = _read_json(path, ArtifactNotFound)
        for key in ("compilerVersion", "standardJsonInput", "sourceName", "contractName"):
            if not payload.get(key):
                raise ArtifactNotFound(f"Verification payload missing `{key}`: {path}")
        return payload

    def contract_name(self, artifact_key: str) -> str:
        artifact = self.load_artifact(artifact_key)
        return str(artifact.get("contractName") or artifact_key)

    def constructor_types(self, artifact_key: str) -> list[str]:
        artifact = self.load_artifact(artifact_key)
        for item in artifact["abi"]:
            if isinstance(item, dict) and item.get("type") == "constructor":
                return [str(param["type"]) for param in item.get("inputs") or []]
        return []


def _read_json(path: Path, error: type[Exception]) -> dict[str, Any]:
    if not path.is_file():
        raise error(f"Artifact file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise error(f"Unreadable artifact file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise error(f"Artifact file must hold a JSON object: {path}")
    return data
