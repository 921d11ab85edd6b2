"""Variable resolution for workspaces.

Variables come from literal `vars` and from var files, which may be inline or
read out of a ConfigMap or Secret key. Referenced objects are read on every
call, never cached, so a changed ConfigMap is picked up on the next reconcile.

ORDER AND PRECEDENCE:
Literal vars first, then var file entries in declaration order. When a key
appears more than once the first occurrence wins; later declarations never
override earlier ones.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import yaml

from .errors import ResolutionError
from .models import EnvVar, KeyReference, VarFile, VarFileFormat, VarFileSource, WorkspaceParameters
from .objects import ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)


class VariableLoader:
    """Resolves vars, var files and env entries against an ObjectStore."""

    def __init__(self, objects: ObjectStore, default_namespace: str) -> None:
        self._objects = objects
        self._default_namespace = default_namespace

    def _namespace(self, ref: KeyReference, namespace: str | None) -> str:
        return ref.namespace or namespace or self._default_namespace

    def _read_config_map_key(self, ref: KeyReference, namespace: str | None) -> str:
        ns = self._namespace(ref, namespace)
        try:
            data = self._objects.get_config_map(ns, ref.name)
        except ObjectStoreError as e:
            raise ResolutionError(f"Cannot read ConfigMap {ns}/{ref.name}: {e}") from e
        if data is None:
            raise ResolutionError(f"ConfigMap {ns}/{ref.name} not found")
        if ref.key not in data:
            raise ResolutionError(f"Key {ref.key!r} not found in ConfigMap {ns}/{ref.name}")
        return data[ref.key]

    def _read_secret_key(self, ref: KeyReference, namespace: str | None) -> str:
        ns = self._namespace(ref, namespace)
        try:
            data = self._objects.get_secret(ns, ref.name)
        except ObjectStoreError as e:
            raise ResolutionError(f"Cannot read Secret {ns}/{ref.name}: {e}") from e
        if data is None:
            raise ResolutionError(f"Secret {ns}/{ref.name} not found")
        if ref.key not in data:
            raise ResolutionError(f"Key {ref.key!r} not found in Secret {ns}/{ref.name}")
        return data[ref.key]

    def _var_file_content(self, var_file: VarFile, namespace: str | None) -> tuple[str, str]:
        """Return (content, description) for a var file."""
        match var_file.source:
            case VarFileSource.LITERAL:
                return var_file.content or "", "literal var file"
            case VarFileSource.CONFIG_MAP_KEY:
                ref = var_file.config_map_key_ref
                assert ref is not None  # enforced by VarFile validation
                return (
                    self._read_config_map_key(ref, namespace),
                    f"ConfigMap {self._namespace(ref, namespace)}/{ref.name}[{ref.key}]",
                )
            case VarFileSource.SECRET_KEY:
                ref = var_file.secret_key_ref
                assert ref is not None
                return (
                    self._read_secret_key(ref, namespace),
                    f"Secret {self._namespace(ref, namespace)}/{ref.name}[{ref.key}]",
                )
        raise ResolutionError(f"Unsupported var file source: {var_file.source}")

    @staticmethod
    def _parse_var_file(content: str, fmt: VarFileFormat, description: str) -> dict[str, Any]:
        if not content.strip():
            return {}
        try:
            if fmt == VarFileFormat.JSON:
                data = json.loads(content)
            else:
                data = yaml.safe_load(content)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ResolutionError(f"Cannot parse {description} as {fmt.value}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ResolutionError(f"{description} must contain a {fmt.value} mapping")
        return {str(k): v for k, v in data.items()}

    def load(self, params: WorkspaceParameters, namespace: str | None = None) -> list[tuple[str, Any]]:
        """Resolve all variable assignments in order.

        Args:
            params: Workspace parameters.
            namespace: Namespace used for references that do not name one.

        Returns:
            Ordered list of (key, value) with duplicate keys removed, first wins.

        Raises:
            ResolutionError: If a referenced object or key is absent, or a var
                file cannot be parsed.
        """
        resolved: list[tuple[str, Any]] = []
        seen: set[str] = set()

        def add(key: str, value: Any, origin: str) -> None:
            if key in seen:
                logger.debug(
                    "Ignoring duplicate variable, first occurrence wins",
                    extra={"key": key, "origin": origin},
                )
                return
            seen.add(key)
            resolved.append((key, value))

        for var in params.vars:
            add(var.key, var.value, "vars")

        for var_file in params.var_files:
            content, description = self._var_file_content(var_file, namespace)
            for key, value in self._parse_var_file(content, var_file.format, description).items():
                add(key, value, description)

        return resolved

    def _resolve_env(self, env_var: EnvVar, namespace: str | None) -> str:
        if env_var.value is not None:
            return env_var.value
        if env_var.config_map_key_ref is not None:
            return self._read_config_map_key(env_var.config_map_key_ref, namespace)
        if env_var.secret_key_ref is not None:
            return self._read_secret_key(env_var.secret_key_ref, namespace)
        raise ResolutionError(f"Environment variable {env_var.name} has no source")

    def load_env(self, params: WorkspaceParameters, namespace: str | None = None) -> dict[str, str]:
        """Resolve environment variables for terraform processes.

        Raises:
            ResolutionError: If a referenced object or key is absent.
        """
        env: dict[str, str] = {}
        for env_var in params.env:
            if env_var.name in env:
                continue
            env[env_var.name] = self._resolve_env(env_var, namespace)
        return env
